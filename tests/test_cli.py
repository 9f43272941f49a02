"""
Tests for the CLI parser: loom names and their aliases.
"""

import json

import pytest

from loombox.cli import (
    build_parser,
    cmd_bolts,
    cmd_cut,
    cmd_loom,
    cmd_mill,
    cmd_spools,
    cmd_tap,
    cmd_throw,
    cmd_weave,
)


@pytest.mark.parametrize("argv,func", [
    (["weave"], cmd_weave),
    (["chat", "--new"], cmd_weave),
    (["throw", "hello", "there"], cmd_throw),
    (["ask", "-n", "2", "hi"], cmd_throw),
    (["saves", "--tree"], cmd_bolts),
    (["serve", "--port", "9000"], cmd_mill),
    (["conversations"], cmd_spools),
    (["rm", "abc"], cmd_cut),
    (["wire", "--raw"], cmd_tap),
    (["br"], cmd_loom),
])
def test_aliases_dispatch(argv, func):
    """Loom names and their standard aliases reach the same command."""
    args = build_parser().parse_args(argv)
    assert args.func is func


def test_throw_arguments():
    """throw collects its text words and flags."""
    args = build_parser().parse_args(["send", "-c", "claude", "--resume", "--json", "what", "now"])
    assert args.text == ["what", "now"]
    assert args.client == "claude"
    assert args.resume and args.json
    assert args.n is None


def test_loom_arguments():
    """loom takes context, seed and turns positionally, with defaults."""
    args = build_parser().parse_args(["backrooms"])
    assert (args.context, args.seed, args.turns) == ("blank", "default", 5)
    args = build_parser().parse_args(["loom", "dreams", "stairs", "8", "--no-log"])
    assert (args.context, args.seed, args.turns, args.no_log) == ("dreams", "stairs", 8, True)


def test_cut_needs_an_id():
    """cut refuses to run without a conversation id."""
    with pytest.raises(SystemExit):
        build_parser().parse_args(["cut"])


def test_unknown_command_exits():
    """Unknown commands exit through argparse."""
    with pytest.raises(SystemExit):
        build_parser().parse_args(["knit"])


def test_tap_prints_recent_entries(tmp_path, capsys):
    """tap prints the last entries of the wire log, optionally by role."""
    log = tmp_path / "wire.jsonl"
    rows = [
        {"ts": "2024-05-01T10:30:00+00:00", "dir": "outbound", "role": "user", "len": 2, "content": "hi"},
        {"ts": "2024-05-01T10:30:02+00:00", "dir": "inbound", "role": "assistant", "model": "m",
         "len": 5, "content": "hello", "stop": "stop"},
    ]
    log.write_text("".join(json.dumps(r) + "\n" for r in rows))

    cmd_tap(build_parser().parse_args(["tap", "--log", str(log), "--last", "1"]))
    out = capsys.readouterr().out.splitlines()
    assert out == ["  10:30:02 ← assistant m (5 chars) [stop]  hello"]

    cmd_tap(build_parser().parse_args(["tap", "--log", str(log), "--role", "user", "--raw"]))
    assert json.loads(capsys.readouterr().out) == rows[0]


def test_tap_missing_log(tmp_path, capsys):
    """A missing wire log is reported, not raised."""
    cmd_tap(build_parser().parse_args(["tap", "--log", str(tmp_path / "none.jsonl")]))
    assert "No wire log entries" in capsys.readouterr().out
