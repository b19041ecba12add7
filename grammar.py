"""Spelling and punctuation clean-up for transcribed text."""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Optional

try:
    from spellchecker import SpellChecker
except Exception:  # pragma: no cover
    SpellChecker = None  # type: ignore

logger = logging.getLogger(__name__)

SPELLCHECK_LANGUAGES = {"en", "es", "fr", "pt", "de", "it", "ru", "ar", "eu", "lv", "nl", "fa"}

_WORD = re.compile(r"[^\W\d_]+(?:'[^\W\d_]+)?")
_SENTENCE_LOWER = re.compile(r"([.!?]\s+)([a-z])")
_TERMINATORS = ".!?\"')"


def fix_punctuation(text: str) -> str:
    result = text.strip()
    if not result:
        return result
    result = result[0].upper() + result[1:]
    result = _SENTENCE_LOWER.sub(lambda m: m.group(1) + m.group(2).upper(), result)
    if result[-1] not in _TERMINATORS:
        result += "."
    return result


def _match_case(original: str, replacement: str) -> str:
    if original.isupper() and len(original) > 1:
        return replacement.upper()
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


class GrammarCorrector:
    def __init__(self, fix_spelling: bool = True) -> None:
        self._fix_spelling = fix_spelling
        self._checkers: dict[str, Optional[Any]] = {}
        self._lock = threading.Lock()

    def correct(self, text: str, language: str) -> str:
        try:
            result = self._spell(text, language) if self._fix_spelling else text
            return fix_punctuation(result)
        except Exception:
            logger.exception("Grammar correction failed, keeping text unchanged")
            return text

    def _checker(self, language: str) -> Optional[Any]:
        if SpellChecker is None or language not in SPELLCHECK_LANGUAGES:
            return None
        with self._lock:
            if language not in self._checkers:
                try:
                    self._checkers[language] = SpellChecker(language=language)
                except Exception as exc:
                    logger.warning(f"No spell checker for {language}: {exc}")
                    self._checkers[language] = None
            return self._checkers[language]

    def _spell(self, text: str, language: str) -> str:
        checker = self._checker(language)
        if checker is None:
            return text

        def fix(match: re.Match) -> str:
            word = match.group(0)
            lowered = word.lower()
            if lowered in checker or len(word) < 2:
                return word
            suggestion = checker.correction(lowered)
            if not suggestion or suggestion == lowered:
                return word
            return _match_case(word, suggestion)

        return _WORD.sub(fix, text)
