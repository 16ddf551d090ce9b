"""
Local language heuristics.

The AI language detector is not blindly trusted: for short or
non-Latin-script documents it frequently falls back to its baseline
language ("en") with middling confidence. A local script/keyword signal
is computed for every text and wins when it is more confident, or when
the AI answered the baseline language for text in a non-Latin script.

Heuristic table (first match wins):

    Cyrillic + Macedonian keywords   mk  0.90
    Cyrillic                          sr  0.80
    French keywords or diacritics     fr  0.80
    German function words             de  0.70
    Spanish function words            es  0.70
    otherwise                         en  0.50
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

BASELINE_LANGUAGE = "en"
MIN_DETECTABLE_CHARS = 10

_CYRILLIC = re.compile(r"[а-яёѓќѕјљњџ]", re.IGNORECASE)
_MACEDONIAN_WORDS = re.compile(
    r"(уверение|универзитет|информатика|контролен|испит|диплома|сертификат|институт|факултет|"
    r"ѓ|ќ|ѕ)",
    re.IGNORECASE,
)
_FRENCH_WORDS = re.compile(
    r"\b(le|les|du|des|est|une|avec|pour|dans|sur|attestation|certificat|université|"
    r"formation|informatique|français|cours|publique|municipale)\b",
    re.IGNORECASE,
)
_FRENCH_DIACRITICS = re.compile(r"[àâäéèêëïîôùûüÿç]", re.IGNORECASE)
_GERMAN_WORDS = re.compile(
    r"\b(der|die|das|und|ist|mit|für|von|auf|zu|im|am|ein|eine|einen|einem|eines|nicht)\b",
    re.IGNORECASE,
)
_SPANISH_WORDS = re.compile(
    r"\b(el|los|las|del|y|es|en|con|para|por|una|que|se|lo)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class LanguageGuess:
    language:     str
    confidence:   float
    alternatives: list[tuple[str, float]] = field(default_factory=list)
    method:       str = "heuristic"
    non_latin:    bool = False


def _word_hits(pattern: re.Pattern[str], text: str) -> int:
    return len(pattern.findall(text))


def detect_language_heuristic(text: str) -> LanguageGuess:
    if not text or len(text.strip()) < MIN_DETECTABLE_CHARS:
        return LanguageGuess(BASELINE_LANGUAGE, 0.0, [(BASELINE_LANGUAGE, 0.0)])

    if _CYRILLIC.search(text):
        if _MACEDONIAN_WORDS.search(text):
            return LanguageGuess("mk", 0.9, [("mk", 0.9), ("sr", 0.1)], non_latin=True)
        return LanguageGuess("sr", 0.8, [("sr", 0.8), ("mk", 0.2)], non_latin=True)

    if _FRENCH_WORDS.search(text) or _FRENCH_DIACRITICS.search(text):
        return LanguageGuess("fr", 0.8, [("fr", 0.8), ("en", 0.2)])

    german, spanish = _word_hits(_GERMAN_WORDS, text), _word_hits(_SPANISH_WORDS, text)
    if german >= 2 and german >= spanish:
        return LanguageGuess("de", 0.7, [("de", 0.7), ("en", 0.3)])
    if spanish >= 2:
        return LanguageGuess("es", 0.7, [("es", 0.7), ("en", 0.3)])

    return LanguageGuess(BASELINE_LANGUAGE, 0.5, [(BASELINE_LANGUAGE, 0.5)])


def reconcile(ai: LanguageGuess, heuristic: LanguageGuess) -> LanguageGuess:
    """Pick between the AI answer and the local heuristic."""
    if heuristic.confidence > ai.confidence:
        return heuristic
    if heuristic.non_latin and ai.language == BASELINE_LANGUAGE:
        return heuristic
    return ai
