#!/usr/bin/env python3
"""
LoomBox CLI: weave a conversation, then pull on any thread.

Every command has a loom name and a standard alias:

    LOOM            STANDARD        WHAT IT DOES
    ----            --------        ----------------------------------
    weave           chat            Interactive branching chat
    throw           send, ask       Send one message, print the replies
    bolts           saves, ls       List save states
    pattern         show            Print the active path of a save
    unspool         export, dump    Export a conversation to JSON
    spools          conversations   List stored conversations
    cut             delete, rm      Delete stored conversations
    tap             wire            Show recent wire log entries
    loom            backrooms, br   Let the model talk to itself
    mill            serve, start    Start the HTTP server
"""

import argparse
import asyncio
import json
import signal
import sys

from loombox import __version__

BANNER = r"""
    ╔══════════════════════════════════════════╗
    ║   ┬  ┌─┐┌─┐┌┬┐┌┐ ┌─┐─┐ ┬                 ║
    ║   │  │ ││ ││││├┴┐│ │┌┴┬┘                 ║
    ║   ┴─┘└─┘└─┘┴ ┴└─┘└─┘┴ └─                 ║
    ║                                          ║
    ║   Every reply is a thread.   v""" + __version__ + r"""       ║
    ╚══════════════════════════════════════════╝
"""

CHAT_HELP = """\
  !rw [id]        rewind to the parent, or to message <id>
  !rw <i> [b]     rewind to path index i (negative counts back), then sibling b
  !edit <text>    fork the current message with new text
  !concat <text>  add a user message without a reply (alias !add)
  !next / !prev   move to the next / previous sibling
  !child [i]      move to child i (default 0)
  !retry          regenerate the current reply as a new sibling
  !merge          merge the current message into its parent
  !save <name>    save the cursor under <name>
  !load <name>    load a save
  !history        print the active path
  !quit           leave
"""


def _runtime(args):
    from loombox.config import get_config, setup_logging
    from loombox.runtime import build_runtime

    cfg = get_config()
    setup_logging(cfg)
    return build_runtime(cfg, client_name=args.client, model_alias=args.model)


def _print_path(path):
    for node in path:
        print(f"  [{node.role}] ({node.id[:8]}) {node.text}")


def _fail(message: str) -> None:
    print(f"  ✗ {message}", file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _chat_local(rt, session_id: str, line: str) -> bool:
    """Navigation commands that only exist in the terminal. True if handled."""
    from loombox import tree
    from loombox.backends.errors import ProviderError
    from loombox.storage.models import Cursor

    sessions = rt.sessions
    session = await sessions.ensure_session(session_id)
    parts = line.split()
    cmd = parts[0].lower()

    if cmd == "!history":
        _print_path((await sessions.history(session_id))["path"])
    elif cmd in ("!next", "!prev"):
        history = await sessions.history(session_id)
        idx = tree.sibling_index(history["messages"], session.cursor.parent_message_id)
        node = await sessions.select_sibling(session_id, idx + (1 if cmd == "!next" else -1))
        print(f"  → {node.text}" if node else "  (no siblings)")
    elif cmd == "!child":
        index = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 0
        node = await sessions.select_child(session_id, index)
        print(f"  → {node.text}" if node else "  (no such child)")
    elif cmd == "!merge":
        node = await rt.engine.merge_up(session.cursor.conversation_id, session.cursor.parent_message_id)
        if node is None:
            print("  (nothing to merge)")
        else:
            await sessions.move(session, Cursor(session.cursor.conversation_id, node.id))
            print(f"  merged → {node.text}")
    elif cmd == "!retry":
        if session.cursor.parent_message_id is None:
            print("  (nothing to retry)")
            return True
        try:
            result = await rt.engine.retry(
                session.cursor.conversation_id,
                session.cursor.parent_message_id,
                rt.model_options,
                system_message=rt.system_message,
                on_event=lambda e: print(e.delta_text, end="", flush=True) if e.delta_text else None,
            )
        except ProviderError as e:
            print(f"\n  ✗ {e}")
            return True
        await sessions.move(session, result.new_cursor)
        print()
    elif cmd == "!help":
        print(CHAT_HELP)
    else:
        return False
    return True


async def _chat(args):
    from loombox.backends.errors import ProviderError

    rt = _runtime(args)
    session_id = "local"
    session = await rt.sessions.ensure_session(session_id, resume=not args.new)
    print(BANNER)
    print(f"  Client: {rt.client_name}  Model: {rt.model_options.get('model')}")
    print(f"  Conversation: {session.cursor.conversation_id}  (!help for commands)")
    print()

    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                line = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                break
            stripped = line.strip()
            if stripped in ("!quit", "!exit", "!q"):
                break
            if stripped.startswith("!") and await _chat_local(rt, session_id, stripped):
                continue

            # Ctrl-C aborts the reply in flight, not the program
            stop = asyncio.Event()
            try:
                loop.add_signal_handler(signal.SIGINT, stop.set)
            except (NotImplementedError, RuntimeError):
                pass
            try:
                result = await rt.sessions.handle_input(
                    session_id,
                    line,
                    on_token=lambda t: print(t, end="", flush=True),
                    signal=stop,
                )
            except ProviderError as e:
                print(f"\n  ✗ {e}")
                continue
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass

            if result["type"] == "command":
                mark = "✓" if result["ok"] else "✗"
                print(f"  {mark} {result['text']}")
            elif result["type"] == "message":
                print()
                if result.get("aborted"):
                    print("  (aborted)")
                if len(result["replies"]) > 1:
                    print(f"  ({len(result['replies'])} candidates, !next / !prev to browse)")
    finally:
        rt.close()


def cmd_weave(args):
    """Interactive branching chat."""
    from loombox.config import ConfigError

    try:
        asyncio.run(_chat(args))
    except ConfigError as e:
        _fail(str(e))


async def _send(args):
    rt = _runtime(args)
    try:
        options = dict(rt.model_options)
        if args.n:
            options["n"] = args.n
        conversation_id = args.conversation
        parent_id = args.parent
        if conversation_id is None and args.resume:
            last = await rt.repository.get_last_cursor()
            if last is not None:
                conversation_id, parent_id = last.conversation_id, last.parent_message_id
        result = await rt.engine.generate(
            conversation_id,
            parent_id,
            " ".join(args.text),
            options,
            system_message=rt.system_message,
        )
        await rt.repository.set_last_cursor(result.new_cursor)
    finally:
        rt.close()

    if args.json:
        print(json.dumps({
            "conversationId": result.conversation_id,
            "cursorId": result.new_cursor.parent_message_id,
            "replies": result.replies_by_index,
        }, indent=2, ensure_ascii=False))
        return
    for idx, text in result.replies_by_index.items():
        if len(result.replies_by_index) > 1:
            print(f"--- candidate {idx} ---")
        print(text)


def cmd_throw(args):
    """Send one message and print the replies."""
    from loombox.backends.errors import ProviderError
    from loombox.config import ConfigError

    try:
        asyncio.run(_send(args))
    except (ConfigError, ProviderError, ValueError) as e:
        _fail(str(e))


def cmd_bolts(args):
    """List save states."""
    from loombox.config import get_config
    from loombox.storage.save_states import SaveStateStore, format_label

    cfg = get_config()
    store = SaveStateStore((cfg.get("storage") or {}).get("save_states_dir", "./data/saves"))

    if args.tree:
        groups = store.by_conversation()
        if not groups:
            print("  No saves.")
        for conversation_id, group in groups.items():
            print(f"  {group['name'] or conversation_id}")
            for state in group["states"]:
                print(f"    • {format_label(state)}")
        return

    states = store.list()
    if not states:
        print("  No saves.")
    for state in states:
        print(f"  • {format_label(state)}  [{state.slug}]")


def cmd_pattern(args):
    """Print the active path of a save."""
    from loombox import tree
    from loombox.config import get_config
    from loombox.storage.models import Conversation, Cursor
    from loombox.storage.save_states import SaveStateStore

    cfg = get_config()
    store = SaveStateStore((cfg.get("storage") or {}).get("save_states_dir", "./data/saves"))
    state = store.find(" ".join(args.name))
    if state is None:
        _fail(f"Save not found: {' '.join(args.name)}")
    cursor = Cursor.from_dict(state.conversation_data)
    conversation = Conversation.from_dict(state.conversation)
    print(f"  {state.name} — {state.summary}")
    _print_path(tree.path(conversation.messages, cursor.parent_message_id))


async def _export(args):
    rt = _runtime(args)
    try:
        conversation_id = args.conversation_id
        if not conversation_id:
            last = await rt.repository.get_last_cursor()
            conversation_id = last.conversation_id if last else None
        conversation = await rt.repository.get_conversation(conversation_id)
    finally:
        rt.close()
    if conversation is None:
        _fail(f"Conversation not found: {conversation_id}")

    output = args.output or f"{conversation.id}.json"
    with open(output, "w", encoding="utf-8") as f:
        json.dump(conversation.to_dict(), f, indent=2, ensure_ascii=False)
    print(f"  Exported {len(conversation.messages)} messages to {output}")


def cmd_unspool(args):
    """Export a conversation to JSON."""
    from loombox.config import ConfigError

    try:
        asyncio.run(_export(args))
    except ConfigError as e:
        _fail(str(e))


async def _spools(args):
    from loombox.storage.save_states import summarize

    rt = _runtime(args)
    try:
        last = await rt.repository.get_last_cursor()
        rows = []
        for conversation_id in await rt.repository.conversation_ids():
            rows.append(await rt.repository.get_conversation(conversation_id))
    finally:
        rt.close()
    if not rows:
        print("  No conversations.")
        return
    for conversation in rows:
        mark = "*" if last and last.conversation_id == conversation.id else " "
        print(f" {mark} {conversation.id}  {len(conversation.messages):>4} messages  {summarize(conversation)}")


def cmd_spools(args):
    """List stored conversations."""
    from loombox.config import ConfigError

    try:
        asyncio.run(_spools(args))
    except ConfigError as e:
        _fail(str(e))


async def _cut(args):
    rt = _runtime(args)
    try:
        for conversation_id in args.conversation_ids:
            if await rt.repository.get_conversation(conversation_id) is None:
                print(f"  ✗ Conversation not found: {conversation_id}")
                continue
            await rt.repository.delete_conversation(conversation_id)
            print(f"  ✓ Deleted {conversation_id}")
    finally:
        rt.close()


def cmd_cut(args):
    """Delete stored conversations."""
    from loombox.config import ConfigError

    try:
        asyncio.run(_cut(args))
    except ConfigError as e:
        _fail(str(e))


def cmd_tap(args):
    """Show recent wire log entries."""
    from loombox.config import get_config
    from loombox.wiretap import format_entry, read_entries

    log_path = args.log or (get_config().get("wiretap") or {}).get("path", "./data/wire.jsonl")
    entries = read_entries(log_path, limit=None if args.role else args.last)
    if args.role:
        entries = [e for e in entries if e.get("role") == args.role][-args.last:]
    if not entries:
        print(f"  No wire log entries in {log_path}")
        return
    for entry in entries:
        print(format_entry(entry, raw=args.raw))


async def _backrooms(args):
    from loombox import tree
    from loombox.backrooms import load_context, load_seed, run_backrooms, write_transcript
    from loombox.config import get_config

    rt = _runtime(args)
    br_cfg = get_config().get("backrooms") or {}
    context = load_context(args.context, br_cfg.get("contexts_dir", "./contexts"))
    seed = load_seed(args.seed, br_cfg.get("seeds_dir", "./seeds"))
    options = dict(rt.model_options)
    options.pop("n", None)

    print(BANNER)
    print(f"  Backrooms: context={args.context} seed={args.seed} turns={args.turns}")
    print("  Ctrl-C stops the conversation")

    def show(turn, node):
        print(f"\n[Turn {turn + 1}/{args.turns}] {node.role}")
        print(node.text)

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        result = await run_backrooms(
            rt.engine, seed, args.turns, options,
            system_message=context, on_turn=show, signal=stop,
        )
        await rt.repository.set_last_cursor(result.cursor)
        conversation = await rt.repository.get_conversation(result.conversation_id)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        rt.close()

    print()
    if result.aborted:
        print("  (stopped)")
    print(f"  Conversation: {result.conversation_id}  ('loombox weave' resumes here)")
    if not args.no_log:
        path = write_transcript(
            args.log_dir or br_cfg.get("log_dir", "./data/backrooms"),
            tree.path(conversation.messages, result.cursor.parent_message_id),
            header={"Context": args.context, "Seed": args.seed, "Client": rt.client_name},
        )
        print(f"  Transcript: {path}")


def cmd_loom(args):
    """Let the model talk to itself for a number of turns."""
    from loombox.backends.errors import ProviderError
    from loombox.config import ConfigError

    try:
        asyncio.run(_backrooms(args))
    except (ConfigError, ProviderError, ValueError) as e:
        _fail(str(e))


def cmd_mill(args):
    """Start the LoomBox HTTP server."""
    import uvicorn
    from loombox.config import get_config

    cfg = get_config()
    server_cfg = cfg.get("server") or {}
    host = args.host or server_cfg.get("host", "127.0.0.1")
    port = args.port or server_cfg.get("port", 8000)

    print(BANNER)
    print(f"  Listening on {host}:{port}")
    print()

    uvicorn.run(
        "loombox.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names (loom + standard)."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def _client_args(p):
    p.add_argument("--client", "-c", default=None, help="Client name from config.yaml")
    p.add_argument("--model", "-m", default=None, help="Model alias from config.yaml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loombox",
        description="LoomBox: branching conversations with language models.",
        epilog=(
            "Each command has a loom name and standard aliases.\n"
            "Example: 'loombox weave' and 'loombox chat' do the same thing."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"loombox {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_weave(p):
        _client_args(p)
        p.add_argument("--new", action="store_true", help="Start a new conversation instead of resuming")

    _add_command(sub, ["weave", "chat"], "Interactive branching chat", cmd_weave, setup_weave)

    def setup_throw(p):
        _client_args(p)
        p.add_argument("text", nargs="+", help="Message text")
        p.add_argument("--conversation", default=None, help="Conversation id")
        p.add_argument("--parent", default=None, help="Parent message id")
        p.add_argument("--resume", "-r", action="store_true", help="Continue from the last cursor")
        p.add_argument("-n", type=int, default=None, help="Number of candidates")
        p.add_argument("--json", action="store_true", help="JSON output")

    _add_command(sub, ["throw", "send", "ask"], "Send one message, print the replies", cmd_throw, setup_throw)

    def setup_bolts(p):
        p.add_argument("--tree", action="store_true", help="Group saves by conversation")

    _add_command(sub, ["bolts", "saves", "ls"], "List save states", cmd_bolts, setup_bolts)

    def setup_pattern(p):
        p.add_argument("name", nargs="+", help="Save name or slug")

    _add_command(sub, ["pattern", "show"], "Print the active path of a save", cmd_pattern, setup_pattern)

    def setup_unspool(p):
        _client_args(p)
        p.add_argument("conversation_id", nargs="?", default=None, help="Conversation id (default: last)")
        p.add_argument("--output", "-o", default=None, help="Output file")

    _add_command(sub, ["unspool", "export", "dump"], "Export a conversation to JSON", cmd_unspool, setup_unspool)

    def setup_spools(p):
        _client_args(p)

    _add_command(sub, ["spools", "conversations", "convs"], "List stored conversations", cmd_spools, setup_spools)

    def setup_cut(p):
        _client_args(p)
        p.add_argument("conversation_ids", nargs="+", help="Conversation id(s) to delete")

    _add_command(sub, ["cut", "delete", "rm"], "Delete stored conversations", cmd_cut, setup_cut)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Wire log path (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show this many entries")
        p.add_argument("--role", default=None, help="Only entries with this role")
        p.add_argument("--raw", action="store_true", help="Print raw JSONL")

    _add_command(sub, ["tap", "wire"], "Show recent wire log entries", cmd_tap, setup_tap)

    def setup_loom(p):
        _client_args(p)
        p.add_argument("context", nargs="?", default="blank", help="Context name (contexts/<name>.txt)")
        p.add_argument("seed", nargs="?", default="default", help="Seed name (seeds/<name>.json)")
        p.add_argument("turns", nargs="?", type=int, default=5, help="Number of turns")
        p.add_argument("--log-dir", default=None, help="Transcript directory")
        p.add_argument("--no-log", action="store_true", help="Do not write a transcript")

    _add_command(sub, ["loom", "backrooms", "br"], "Let the model talk to itself", cmd_loom, setup_loom)

    def setup_mill(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["mill", "serve", "start"], "Start the HTTP server", cmd_mill, setup_mill)
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        print(BANNER)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
