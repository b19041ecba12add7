"""Language identification for transcribed text."""

from __future__ import annotations

import unicodedata
from collections import Counter
from typing import Optional

DEFAULT_LANGUAGE = "en"

DISPLAY_NAMES = {
    "ar": "Arabic",
    "de": "German",
    "el": "Greek",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "he": "Hebrew",
    "hi": "Hindi",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "nl": "Dutch",
    "pl": "Polish",
    "pt": "Portuguese",
    "ru": "Russian",
    "th": "Thai",
    "tr": "Turkish",
    "uk": "Ukrainian",
    "zh": "Chinese",
}

# Unicode name prefix -> script tag.
_SCRIPT_PREFIXES = (
    ("CJK", "han"),
    ("HIRAGANA", "kana"),
    ("KATAKANA", "kana"),
    ("HANGUL", "hangul"),
    ("CYRILLIC", "cyrillic"),
    ("ARABIC", "arabic"),
    ("GREEK", "greek"),
    ("HEBREW", "hebrew"),
    ("DEVANAGARI", "devanagari"),
    ("THAI", "thai"),
    ("LATIN", "latin"),
)

_SCRIPT_LANGUAGES = {
    "han": ("zh", "ja"),
    "kana": ("ja",),
    "hangul": ("ko",),
    "cyrillic": ("ru", "uk", "bg", "sr", "be", "kk", "mk"),
    "arabic": ("ar", "fa", "ur"),
    "greek": ("el",),
    "hebrew": ("he", "yi"),
    "devanagari": ("hi", "mr", "ne"),
    "thai": ("th",),
}

_NON_LATIN_LANGUAGES = {code for codes in _SCRIPT_LANGUAGES.values() for code in codes}


def _script(char: str) -> Optional[str]:
    if not char.isalpha():
        return None
    name = unicodedata.name(char, "")
    for prefix, script in _SCRIPT_PREFIXES:
        if name.startswith(prefix):
            return script
    return None


def dominant_script(text: str) -> Optional[str]:
    counts = Counter(s for s in map(_script, text) if s is not None)
    if not counts:
        return None
    # Kana anywhere means Japanese even when kanji dominate.
    if counts.get("kana") and counts.get("han"):
        return "kana"
    return counts.most_common(1)[0][0]


def normalise_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    base = code.strip().lower().replace("_", "-").split("-")[0]
    return base if base.isalpha() and 2 <= len(base) <= 3 else None


class LanguageDetector:
    def detect(self, text: str, hint: Optional[str] = None) -> tuple[str, str]:
        code = self._detect_code(text, normalise_code(hint))
        return code, DISPLAY_NAMES.get(code, code.upper())

    def _detect_code(self, text: str, hint: Optional[str]) -> str:
        script = dominant_script(text)
        if script in _SCRIPT_LANGUAGES:
            candidates = _SCRIPT_LANGUAGES[script]
            return hint if hint in candidates else candidates[0]
        if hint is None:
            return DEFAULT_LANGUAGE
        if script == "latin" and hint in _NON_LATIN_LANGUAGES:
            return DEFAULT_LANGUAGE
        return hint
