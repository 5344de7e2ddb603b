"""In-memory lexical index over a JSONL corpus.

Each line of the corpus file is ``{"text": ..., "metadata": {...}}``. A
keyword lookup returns the passages containing the keyword, scored by
occurrence count and normalized to (0, 1). Good enough for a local memory
file; real deployments plug in their own LexicalIndex.
"""

from __future__ import annotations

import json
import os
import sys
import threading

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from observability import get_logger
from recall_sources import LexicalIndex

_log = get_logger("corpus_index")


class TextCorpusIndex(LexicalIndex):
    """Substring keyword index. Thread-safe for concurrent reads and adds."""

    def __init__(self, entries: list[dict] | None = None):
        self._lock = threading.Lock()
        self._entries: list[dict] = []
        for entry in entries or []:
            self.add(entry.get("text", ""), entry.get("metadata"))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, text: str, metadata: dict | None = None) -> None:
        if not isinstance(text, str) or not text.strip():
            return
        with self._lock:
            self._entries.append({"text": text, "metadata": dict(metadata or {})})

    def search(self, keyword: str, limit: int) -> list[dict]:
        if not keyword or limit <= 0:
            return []
        with self._lock:
            entries = list(self._entries)
        hits = []
        for position, entry in enumerate(entries):
            count = entry["text"].count(keyword)
            if count:
                hits.append({
                    "text": entry["text"],
                    "matchScore": round(count / (count + 1), 6),
                    "metadata": {**entry["metadata"], "position": position},
                })
        hits.sort(key=lambda h: h["matchScore"], reverse=True)
        return hits[:limit]

    @classmethod
    def from_jsonl(cls, path: str) -> "TextCorpusIndex":
        """Load a corpus file. Malformed lines are skipped with a warning."""
        index = cls()
        if not os.path.isfile(path):
            _log.warning("corpus_file_missing", path=path)
            return index
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as e:
                    _log.warning("corpus_line_invalid", path=path, line=lineno, error=str(e))
                    continue
                if isinstance(entry, dict):
                    index.add(entry.get("text", ""), entry.get("metadata"))
        _log.info("corpus_loaded", path=path, entries=len(index))
        return index
