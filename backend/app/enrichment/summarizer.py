"""
Summary quality grading.

The provider's abstractive summary is accepted as-is only when it is
clean; otherwise the summary is rebuilt from the source sentences.
The branch taken decides the quality label, deterministically:

    high    provider summary ends on a sentence boundary, fits max_length,
            and has at most MAX_SENTENCES sentences
    medium  greedy packing of whole sentences fits at least one sentence
    low     hard truncation at a word boundary, with an ellipsis
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

MAX_SENTENCES = 3
DEFAULT_MAX_LENGTH = 200
ELLIPSIS = "..."

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_END = re.compile(r"[.!?][\"')\]]*$")


@dataclass
class SummaryOutcome:
    summary: str
    quality: str              # high | medium | low
    metrics: dict[str, float] = field(default_factory=dict)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text.strip()) if s.strip()]


def _metrics(source: str, summary: str) -> dict[str, float]:
    original = len(source)
    return {
        "original_length": original,
        "summary_length": len(summary),
        "compression_ratio": round(len(summary) / original, 3) if original else 0.0,
        "sentence_count": len(split_sentences(summary)) if summary else 0,
    }


def _pack(sentences: list[str], max_length: int) -> str:
    packed: list[str] = []
    length = 0
    for sentence in sentences:
        extra = len(sentence) + (1 if packed else 0)
        if length + extra > max_length or len(packed) >= MAX_SENTENCES:
            break
        packed.append(sentence)
        length += extra
    return " ".join(packed)


def _truncate(text: str, max_length: int) -> str:
    flat = " ".join(text.split())
    if len(flat) <= max_length:
        return flat
    cut = flat[: max(0, max_length - len(ELLIPSIS))]
    if " " in cut:
        cut = cut[: cut.rfind(" ")]
    return cut.rstrip(" ,;:") + ELLIPSIS


def grade_summary(
    source: str,
    candidate: str | None,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> SummaryOutcome:
    candidate = " ".join((candidate or "").split())

    if (
        candidate
        and len(candidate) <= max_length
        and _SENTENCE_END.search(candidate)
        and len(split_sentences(candidate)) <= MAX_SENTENCES
    ):
        return SummaryOutcome(candidate, "high", _metrics(source, candidate))

    packed = _pack(split_sentences(candidate or source), max_length)
    if packed:
        return SummaryOutcome(packed, "medium", _metrics(source, packed))

    truncated = _truncate(candidate or source, max_length)
    return SummaryOutcome(truncated, "low", _metrics(source, truncated))
