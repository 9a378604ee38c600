#!/usr/bin/env python3
"""Language table for subtimeline.

Languages are identified by ISO 639-1 code throughout the package. The
table also carries the Tesseract traineddata name for OCR.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


# ============================================================
# Language Type
# ============================================================

@dataclass(frozen=True)
class Language:
    """A language known to the package.

    Attributes:
        code: ISO 639-1 code ("" for unknown)
        name: English name
        tesseract: Tesseract language pack name, if OCR supports it
    """
    code: str
    name: str
    tesseract: Optional[str] = None

    @property
    def is_unknown(self) -> bool:
        return self.code == ""

    @property
    def is_cjk(self) -> bool:
        return self.code in ("zh", "ja", "ko")

    def __str__(self) -> str:
        return self.name


UNKNOWN = Language("", "Unknown")


# ============================================================
# Table
# ============================================================

_LANGUAGES = [
    Language("ar", "Arabic", "ara"),
    Language("bg", "Bulgarian", "bul"),
    Language("ca", "Catalan", "cat"),
    Language("cs", "Czech", "ces"),
    Language("da", "Danish", "dan"),
    Language("de", "German", "deu"),
    Language("el", "Greek", "ell"),
    Language("en", "English", "eng"),
    Language("es", "Spanish", "spa"),
    Language("et", "Estonian", "est"),
    Language("fa", "Persian", "fas"),
    Language("fi", "Finnish", "fin"),
    Language("fr", "French", "fra"),
    Language("he", "Hebrew", "heb"),
    Language("hi", "Hindi", "hin"),
    Language("hr", "Croatian", "hrv"),
    Language("hu", "Hungarian", "hun"),
    Language("id", "Indonesian", "ind"),
    Language("it", "Italian", "ita"),
    Language("ja", "Japanese", "jpn"),
    Language("ko", "Korean", "kor"),
    Language("lt", "Lithuanian", "lit"),
    Language("lv", "Latvian", "lav"),
    Language("ms", "Malay", "msa"),
    Language("nl", "Dutch", "nld"),
    Language("no", "Norwegian", "nor"),
    Language("pl", "Polish", "pol"),
    Language("pt", "Portuguese", "por"),
    Language("ro", "Romanian", "ron"),
    Language("ru", "Russian", "rus"),
    Language("sk", "Slovak", "slk"),
    Language("sl", "Slovenian", "slv"),
    Language("sr", "Serbian", "srp"),
    Language("sv", "Swedish", "swe"),
    Language("th", "Thai", "tha"),
    Language("tr", "Turkish", "tur"),
    Language("uk", "Ukrainian", "ukr"),
    Language("vi", "Vietnamese", "vie"),
    Language("zh", "Chinese", "chi_sim"),
]

LANGUAGES: Dict[str, Language] = {lang.code: lang for lang in _LANGUAGES}

# codes that share another entry's data
ALIASES: Dict[str, str] = {
    "nb": "no",
    "nn": "no",
    "iw": "he",
    "in": "id",
    "zh-cn": "zh",
    "zh-hans": "zh",
}


# ============================================================
# Lookup
# ============================================================

def normalize_code(code: Optional[str]) -> str:
    """Lower-case a language code and resolve aliases.

    Args:
        code: Code such as "EN", "nb" or "zh-CN"

    Returns:
        Canonical ISO 639-1 code, or "" if code is empty
    """
    if not code:
        return ""
    c = code.strip().lower().replace("_", "-")
    if c in ALIASES:
        return ALIASES[c]
    return c


def get_language(code: Optional[str]) -> Language:
    """Look up a language by code.

    Codes not in the table still produce a Language so that detected
    languages from an engine are never lost.

    Args:
        code: ISO 639-1 code or alias

    Returns:
        Matching Language, or UNKNOWN for an empty code
    """
    c = normalize_code(code)
    if not c:
        return UNKNOWN
    if c in LANGUAGES:
        return LANGUAGES[c]
    base = c.split("-")[0]
    if base in LANGUAGES:
        return LANGUAGES[base]
    return Language(c, c)


def tesseract_code(code: Optional[str]) -> Optional[str]:
    """Return the Tesseract language pack name for a code, if any."""
    return get_language(code).tesseract
