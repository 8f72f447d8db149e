"""Heuristic language detection for customer messages.

Non-Latin scripts are recognised by Unicode range. Latin-script text is
scored by counting common function words per language; English is the
fallback when nothing scores.
"""
import re
from typing import Dict, List

SCRIPT_PATTERNS = [
    ("zh", re.compile(r"[\u4e00-\u9fff\u3040-\u309f\u30a0-\u30ff]")),  # CJK and kana
    ("ar", re.compile(r"[\u0600-\u06ff]")),
    ("ru", re.compile(r"[\u0400-\u04ff]")),
    ("ko", re.compile(r"[\uac00-\ud7af]")),
]

COMMON_WORDS: Dict[str, List[str]] = {
    "es": ["el", "la", "de", "que", "y", "es", "en", "los", "las", "un", "una", "por", "con", "cómo", "está", "hola"],
    "fr": ["le", "la", "de", "et", "un", "une", "est", "dans", "pour", "je", "vous", "bonjour", "merci"],
    "de": ["der", "die", "das", "und", "ist", "in", "den", "ein", "eine", "nicht", "ich", "sie", "mit"],
    "pt": ["o", "a", "de", "que", "não", "e", "os", "as", "um", "uma", "para", "com", "como", "está", "olá"],
}

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "pt": "Portuguese",
    "zh": "Chinese",
    "ar": "Arabic",
    "ru": "Russian",
    "ko": "Korean",
}

_WORD_PATTERN = re.compile(r"\w+")


def detect_language(text: str) -> str:
    """Return an ISO 639-1 code for the text, defaulting to 'en'."""
    if not text or not isinstance(text, str):
        return "en"

    for code, pattern in SCRIPT_PATTERNS:
        if pattern.search(text):
            return code

    words = _WORD_PATTERN.findall(text.lower())
    best_code, best_score = "en", 0
    for code, vocabulary in COMMON_WORDS.items():
        score = sum(1 for word in words if word in vocabulary)
        # Ties keep the earlier language
        if score > best_score:
            best_code, best_score = code, score

    return best_code


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)
