"""
TraceJournal - append-only span journal.

Written as JSON Lines, one finished span per line, so the file can be
streamed with ``tail -f`` or loaded back for inspection.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

__all__ = ["TraceJournal"]


class TraceJournal:
    """Append-only JSONL export of finished spans."""

    __slots__ = ("_path",)

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    # ── Write ────────────────────────────────────────────────────────

    def append(self, span: Any) -> None:
        entry: Dict[str, Any] = span.to_dict() if hasattr(span, "to_dict") else dict(span)
        entry.setdefault("ts", datetime.now(timezone.utc).isoformat())
        entry.setdefault("pid", os.getpid())
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a") as fp:
            fp.write(json.dumps(entry, default=str) + "\n")

    # ── Read-back ────────────────────────────────────────────────────

    def events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Read all (or last *limit*) spans."""
        if not self._path.exists():
            return []
        parsed = []
        for line in self._path.read_text().strip().splitlines():
            try:
                parsed.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        if limit is not None:
            parsed = parsed[-limit:]
        return parsed

    def tail(self, n: int = 20) -> List[Dict[str, Any]]:
        return self.events(limit=n)

    def count(self) -> int:
        if not self._path.exists():
            return 0
        with self._path.open() as fp:
            return sum(1 for _ in fp)

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()
