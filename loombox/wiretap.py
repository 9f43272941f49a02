"""
Wiretap: a structured JSONL record of every turn the engine persists.

Separate from the debug log. One line per node: who said it, to which model,
in which conversation, how long, and the (possibly truncated) text.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# Content longer than this keeps only its head and tail
MAX_CONTENT = 2000
KEEP_EDGE = 1000


class WireLog:
    """
    Structured JSONL logger for conversation turns.

    Format:
        {"ts": "...", "dir": "outbound|inbound", "role": "...",
         "model": "...", "conv": "...", "len": 123, "content": "..."}

    "outbound" is user text sent to a provider, "inbound" is a reply.
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1, encoding="utf-8")  # line-buffered

    def log(
        self,
        direction: str,
        role: str,
        content: str,
        model: str = "",
        conversation_id: str = "",
        stop_reason: str | None = None,
    ):
        """Write a wire log entry."""
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "model": model,
            "conv": conversation_id[:16] if conversation_id else "",
            "len": len(content),
        }
        if stop_reason:
            entry["stop"] = stop_reason

        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            dropped = len(content) - 2 * KEEP_EDGE
            entry["content"] = (
                content[:KEEP_EDGE]
                + f"\n\n[... {dropped} chars truncated ...]\n\n"
                + content[-KEEP_EDGE:]
            )

        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def read_entries(log_path: str, limit: int | None = None) -> list[dict]:
    """Parse the wire log, skipping lines that are not JSON. Last `limit` entries."""
    path = Path(log_path)
    if not path.exists():
        return []
    entries = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except ValueError:
                logger.debug("Skipping malformed wire log line in %s", path)
    return entries[-limit:] if limit else entries


def format_entry(entry: dict, raw: bool = False) -> str:
    """One wire log entry as a terminal line."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)
    try:
        time_str = datetime.fromisoformat(entry.get("ts", "")).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = "??:??:??"
    arrow = "←" if entry.get("dir") == "inbound" else "→"
    content = " ".join(str(entry.get("content", "")).split())
    if len(content) > 120:
        content = content[:117] + "..."
    stop = f" [{entry['stop']}]" if entry.get("stop") else ""
    model = f" {entry['model']}" if entry.get("model") else ""
    return f"  {time_str} {arrow} {entry.get('role', '?')}{model} ({entry.get('len', 0)} chars){stop}  {content}"
