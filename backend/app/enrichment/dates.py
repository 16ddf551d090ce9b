"""
Date extraction.

Scans text with a fixed, ordered set of matchers:

    ISO            2024-03-15
    dot            15.03.2024
    slash          15/03/2024
    dash           15-03-2024
    French month   15 mars 2024, 15 mars. 2024 (abbreviated)
    English month  15 March 2024, 15 Mar 2024

Every match must carry a year in [1900, 2030]. Numeric dates are
normalized to DD/MM/YYYY; month-name dates are kept as written. The
result is deduplicated, keeps first-seen order, and holds at most 10
entries.
"""

from __future__ import annotations

import re

MIN_YEAR = 1900
MAX_YEAR = 2030
MAX_DATES = 10

_FR_MONTHS = (
    "janvier|février|fevrier|mars|avril|mai|juin|juillet|août|aout|"
    "septembre|octobre|novembre|décembre|decembre|"
    "janv|févr|fevr|avr|juil|sept|déc|dec|oct|nov"
)
_EN_MONTHS = (
    "january|february|march|april|may|june|july|august|september|october|"
    "november|december|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec"
)

# (name, pattern, year group, numeric?) — order matters for dedupe priority
_DATE_PATTERNS: tuple[tuple[str, re.Pattern[str], int, bool], ...] = (
    ("iso",   re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b"), 1, True),
    ("dot",   re.compile(r"\b(\d{1,2})\.(\d{1,2})\.(\d{4})\b"), 3, True),
    ("slash", re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"), 3, True),
    ("dash",  re.compile(r"\b(\d{1,2})-(\d{1,2})-(\d{4})\b"), 3, True),
    ("fr",    re.compile(rf"\b(\d{{1,2}})\s+({_FR_MONTHS})\.?\s+(\d{{4}})\b", re.IGNORECASE), 3, False),
    ("en",    re.compile(rf"\b(\d{{1,2}})\s+({_EN_MONTHS})\.?\s+(\d{{4}})\b", re.IGNORECASE), 3, False),
)


def _valid_numeric(day: int, month: int) -> bool:
    return 1 <= day <= 31 and 1 <= month <= 12


def extract_dates(text: str, limit: int = MAX_DATES) -> list[str]:
    if not text:
        return []

    found: list[str] = []
    seen: set[str] = set()

    for name, pattern, year_group, numeric in _DATE_PATTERNS:
        for match in pattern.finditer(text):
            year = int(match.group(year_group))
            if not MIN_YEAR <= year <= MAX_YEAR:
                continue

            if numeric:
                if name == "iso":
                    day, month = int(match.group(3)), int(match.group(2))
                else:
                    day, month = int(match.group(1)), int(match.group(2))
                if not _valid_numeric(day, month):
                    continue
                value = f"{day:02d}/{month:02d}/{year}"
            else:
                if not 1 <= int(match.group(1)) <= 31:
                    continue
                value = " ".join(match.group(0).split())

            if value not in seen:
                seen.add(value)
                found.append(value)
                if len(found) >= limit:
                    return found

    return found
