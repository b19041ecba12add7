"""Learned wrong -> right substitutions, persisted as one JSON file.

The store is best-effort: read or write failures are logged and the store
keeps working from memory, so correction learning never blocks dictation.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from models import CorrectionEntry

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
PROMPT_BIAS_LABEL = "Vocabulary: "
PROMPT_BIAS_LIMIT = 50

_SENTENCE_START = re.compile(r"[.!?]\s+$")


class CorrectionStore:
    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._entries: list[CorrectionEntry] = []

    def load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            entries = self._decode(json.loads(raw))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Could not load corrections from {self._path}: {exc}")
            entries = []
        with self._lock:
            self._entries = entries

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add(
        self,
        wrong: str,
        correct: str,
        language: str,
        always_replace: bool = True,
    ) -> CorrectionEntry:
        key = (wrong.lower(), language)
        now = datetime.now()
        with self._lock:
            for entry in self._entries:
                if entry.key == key:
                    entry.occurrence_count += 1
                    entry.correct_text = correct
                    entry.always_replace = always_replace
                    entry.last_used_at = now
                    break
            else:
                entry = CorrectionEntry(
                    wrong_text=wrong,
                    correct_text=correct,
                    language=language,
                    always_replace=always_replace,
                    created_at=now,
                    last_used_at=now,
                )
                self._entries.append(entry)
            self._save()
            return replace(entry)

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.id != entry_id]
            removed = len(self._entries) != before
            if removed:
                self._save()
            return removed

    def all(self) -> list[CorrectionEntry]:
        with self._lock:
            return [replace(e) for e in self._entries]

    def export_snapshot(self) -> str:
        with self._lock:
            return self._encode(self._entries)

    def import_snapshot(self, data: Union[str, bytes]) -> bool:
        """Replace every entry with the snapshot's; invalid data changes nothing."""
        try:
            entries = self._decode(json.loads(data))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Rejected correction import: {exc}")
            return False
        with self._lock:
            self._entries = entries
            self._save()
        return True

    # ------------------------------------------------------------------
    # Pipeline hooks
    # ------------------------------------------------------------------

    def apply_corrections(self, text: str) -> str:
        with self._lock:
            active = [e for e in self._entries if e.always_replace and e.wrong_text]
        result = text
        for entry in active:
            pattern = re.compile(rf"(?<!\w){re.escape(entry.wrong_text)}(?!\w)", re.IGNORECASE)
            result = pattern.sub(lambda m, e=entry: _replacement(m, e.correct_text), result)
        return result

    def prompt_bias(self) -> Optional[str]:
        with self._lock:
            ranked = sorted(self._entries, key=lambda e: e.occurrence_count, reverse=True)
        top = [e.correct_text for e in ranked[:PROMPT_BIAS_LIMIT]]
        if not top:
            return None
        return PROMPT_BIAS_LABEL + ", ".join(top)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self._path is None:
            return
        payload = self._encode(self._entries)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            logger.warning(f"Could not save corrections to {self._path}: {exc}")

    @staticmethod
    def _encode(entries: Iterable[CorrectionEntry]) -> str:
        return json.dumps(
            {"version": SNAPSHOT_VERSION, "entries": [e.to_dict() for e in entries]},
            ensure_ascii=False,
            indent=2,
        )

    @staticmethod
    def _decode(data: object) -> list[CorrectionEntry]:
        if isinstance(data, dict):
            items = data["entries"]
        else:
            items = data
        if not isinstance(items, list):
            raise TypeError("corrections must be a list")
        return [CorrectionEntry.from_dict(item) for item in items]


def _replacement(match: re.Match, correct: str) -> str:
    # Mixed-case replacements (brand names) are always verbatim.
    matched = match.group(0)
    if not correct or correct != correct.lower() or not matched[:1].isupper():
        return correct
    before = match.string[: match.start()]
    if before.strip() == "" or _SENTENCE_START.search(before):
        return correct[:1].upper() + correct[1:]
    return correct
