"""
Enrichment Service Client — typed façade over one EnrichmentProvider.

Operations (each independently retryable through the RetryExecutor):

    extract_text(data, mime_type)     → ExtractedText
    detect_language(text)             → LanguageGuess (AI reconciled with heuristics)
    classify(text)                    → Classification (never an empty category)
    summarize(text, max_length)       → SummaryOutcome (high / medium / low)
    translate(text, target, source?)  → TranslationResult, TTL-cached
    supported_languages()             → [{code, name}], TTL-cached

    enrich(data, mime_type, filename) → EnrichmentResult
        extract → language → classify → summarize, reporting each sub-stage

Failure policy:
  - extract_text propagates errors.
  - Each AI operation fails on its own and falls back locally:
      detect_language → script/keyword heuristic
      classify        → keyword table (a category is always produced)
      summarize       → greedy sentence packing ("medium" / "low")
  - enrich() raises only when every provider call it made failed, so the
    executor can retry and the orchestrator can degrade. A partial outage
    keeps everything that was computed; the fallbacks are listed in
    details["fallbacks"].

Caches are injected, never module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, ClassVar

from app.core.exceptions import ServiceError
from app.enrichment.cache import TTLCache
from app.enrichment.classification import (
    ZERO_SHOT_LABELS,
    ZERO_SHOT_MIN_SCORE,
    Entity,
    classify_by_entities,
    classify_by_keywords,
    extract_basic_entities,
    extract_signal_entities,
    generate_tags,
    suggest_name,
)
from app.enrichment.dates import extract_dates
from app.enrichment.language import (
    MIN_DETECTABLE_CHARS,
    LanguageGuess,
    detect_language_heuristic,
    reconcile,
)
from app.enrichment.provider import EnrichmentProvider
from app.enrichment.summarizer import DEFAULT_MAX_LENGTH, SummaryOutcome, grade_summary
from app.processing.extractor import ExtractedText, TextExtractor
from app.schemas.documents import Category, EnrichmentResult, TranslationResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ANALYZABLE_CHARS = 1_000_000

_SUMMARY_CONFIDENCE = {"high": 0.9, "medium": 0.7, "low": 0.4}

_LANGUAGES_KEY = "supported_languages"


@dataclass
class Classification:
    category:       Category
    confidence:     float
    tags:           list[str]
    entities:       list[Entity] = field(default_factory=list)
    dates:          list[str] = field(default_factory=list)
    suggested_name: str = ""
    method:         str = "keywords"    # entities | zero_shot | keywords
    rule:           str | None = None


@dataclass(frozen=True)
class _Attempt:
    """Whether one AI operation reached the provider, and how it ended."""
    called: bool
    error:  ServiceError | None = None

    OK:      ClassVar[_Attempt]
    SKIPPED: ClassVar[_Attempt]

    @classmethod
    def failed(cls, exc: ServiceError) -> _Attempt:
        return cls(True, exc)


_Attempt.OK = _Attempt(True)
_Attempt.SKIPPED = _Attempt(False)


def translation_confidence(original: str, translated: str) -> float:
    if not original or not translated:
        return 0.0
    ratio = min(len(original), len(translated)) / max(len(original), len(translated))
    confidence = ratio * 0.7 + 0.1
    if translated != original:
        confidence += 0.2
    return round(min(confidence, 0.95), 3)


class EnrichmentClient:

    def __init__(
        self,
        provider: EnrichmentProvider,
        extractor: TextExtractor,
        translation_cache: TTLCache,
        language_cache: TTLCache,
        max_analyzable_chars: int = DEFAULT_MAX_ANALYZABLE_CHARS,
        engine: str | None = None,
    ) -> None:
        self._provider = provider
        self._extractor = extractor
        self._translation_cache = translation_cache
        self._language_cache = language_cache
        self._max_chars = max_analyzable_chars
        self.engine = engine or provider.name

    # ------------------------------------------------------------------
    # Single operations
    # ------------------------------------------------------------------

    async def extract_text(self, data: bytes, mime_type: str, filename: str = "") -> ExtractedText:
        return await self._extractor.extract(data, mime_type, filename)

    async def detect_language(self, text: str) -> LanguageGuess:
        guess, _ = await self._detect_language(text)
        return guess

    async def _detect_language(self, text: str) -> tuple[LanguageGuess, _Attempt]:
        text = (text or "")[: self._max_chars]
        heuristic = detect_language_heuristic(text)
        if len(text.strip()) < MIN_DETECTABLE_CHARS:
            return heuristic, _Attempt.SKIPPED

        try:
            ai = await self._provider.detect_language(text)
        except ServiceError as exc:
            logger.warning("Language detection failed, using heuristic | engine=%s error=%s", self.engine, exc)
            return replace(heuristic, method="heuristic_fallback"), _Attempt.failed(exc)

        chosen = reconcile(ai, heuristic)
        if chosen is heuristic:
            logger.info(
                "Language override | ai=%s(%.2f) heuristic=%s(%.2f)",
                ai.language, ai.confidence, heuristic.language, heuristic.confidence,
            )
        return chosen, _Attempt.OK

    async def classify(self, text: str, filename: str = "", mime_type: str = "") -> Classification:
        classification, _ = await self._classify(text, filename, mime_type)
        return classification

    async def _classify(self, text: str, filename: str, mime_type: str) -> tuple[Classification, _Attempt]:
        text = (text or "")[: self._max_chars]
        dates = extract_dates(text)

        if not text.strip():
            category, confidence = classify_by_keywords(text, filename, mime_type)
            return self._finish(text, category, confidence, [], dates, "keywords"), _Attempt.SKIPPED

        try:
            entities = await self._provider.extract_entities(text)
        except ServiceError as exc:
            logger.warning("Entity extraction failed, using keyword table | engine=%s error=%s", self.engine, exc)
            category, confidence = classify_by_keywords(text, filename, mime_type)
            classification = self._finish(text, category, confidence, extract_basic_entities(text), dates, "keywords")
            return classification, _Attempt.failed(exc)

        entities = entities + extract_signal_entities(text)
        decision = classify_by_entities(text, entities)
        if decision is not None:
            category, confidence, rule = decision
            return self._finish(text, category, confidence, entities, dates, "entities", rule), _Attempt.OK

        try:
            ranked = await self._provider.classify_zero_shot(text, list(ZERO_SHOT_LABELS))
        except ServiceError as exc:
            logger.warning("Zero-shot classification failed, using keyword table | engine=%s error=%s", self.engine, exc)
            ranked = []

        if ranked and ranked[0][1] >= ZERO_SHOT_MIN_SCORE and ranked[0][0] in ZERO_SHOT_LABELS:
            label, score = ranked[0]
            return self._finish(text, ZERO_SHOT_LABELS[label], score, entities, dates, "zero_shot"), _Attempt.OK

        category, confidence = classify_by_keywords(text, filename, mime_type)
        return self._finish(text, category, confidence, entities, dates, "keywords"), _Attempt.OK

    def _finish(
        self,
        text: str,
        category: Category,
        confidence: float,
        entities: list[Entity],
        dates: list[str],
        method: str,
        rule: str | None = None,
    ) -> Classification:
        return Classification(
            category=category,
            confidence=min(1.0, max(0.0, confidence)),
            tags=generate_tags(text, category, entities),
            entities=entities,
            dates=dates,
            suggested_name=suggest_name(text, category, entities, dates),
            method=method,
            rule=rule,
        )

    async def summarize(self, text: str, max_length: int = DEFAULT_MAX_LENGTH) -> SummaryOutcome:
        outcome, _ = await self._summarize(text, max_length)
        return outcome

    async def _summarize(self, text: str, max_length: int = DEFAULT_MAX_LENGTH) -> tuple[SummaryOutcome, _Attempt]:
        text = (text or "")[: self._max_chars]
        if len(text) <= max_length:
            return grade_summary(text, text, max_length), _Attempt.SKIPPED
        try:
            candidate = await self._provider.summarize(text, max_length)
        except ServiceError as exc:
            logger.warning("Summarization failed, packing source sentences | engine=%s error=%s", self.engine, exc)
            return grade_summary(text, None, max_length), _Attempt.failed(exc)
        return grade_summary(text, candidate, max_length), _Attempt.OK

    async def translate(
        self,
        text: str,
        target_lang: str,
        source_lang: str | None = None,
    ) -> TranslationResult:
        key = (text, source_lang or "auto", target_lang)

        async def load() -> TranslationResult:
            source = source_lang or (await self.detect_language(text)).language
            if source == target_lang:
                return TranslationResult(
                    translated_text=text, detected_source=source, target_lang=target_lang, confidence=1.0
                )
            translated = await self._provider.translate(text, source, target_lang)
            logger.info(
                "Translated | engine=%s source=%s target=%s chars=%d",
                self.engine, source, target_lang, len(text),
            )
            return TranslationResult(
                translated_text=translated or text,
                detected_source=source,
                target_lang=target_lang,
                confidence=translation_confidence(text, translated),
            )

        return await self._translation_cache.get_or_refresh(key, load)

    async def supported_languages(self) -> list[dict[str, str]]:
        return await self._language_cache.get_or_refresh(_LANGUAGES_KEY, self._provider.supported_languages)

    # ------------------------------------------------------------------
    # Composite
    # ------------------------------------------------------------------

    async def enrich(
        self,
        data: bytes,
        mime_type: str,
        filename: str,
        report: Callable[[str], None] | None = None,
    ) -> EnrichmentResult:
        report = report or (lambda stage: None)

        report("extracting")
        extracted = await self.extract_text(data, mime_type, filename)
        return await self._enrich_extracted(extracted, mime_type, filename, report)

    async def enrich_text(
        self,
        text: str,
        mime_type: str = "text/plain",
        filename: str = "",
        report: Callable[[str], None] | None = None,
    ) -> EnrichmentResult:
        """Re-enrich from already extracted text, skipping extraction."""
        cleaned = (text or "").strip()
        extracted = ExtractedText(cleaned, 1.0, len(cleaned.split()), "stored")
        return await self._enrich_extracted(extracted, mime_type, filename, report or (lambda stage: None))

    async def _enrich_extracted(
        self,
        extracted: ExtractedText,
        mime_type: str,
        filename: str,
        report: Callable[[str], None],
    ) -> EnrichmentResult:
        text = extracted.text
        attempts: dict[str, _Attempt] = {}

        language: LanguageGuess | None = None
        if text:
            report("language")
            language, attempts["language"] = await self._detect_language(text)

        report("classifying")
        classification, attempts["classification"] = await self._classify(text, filename, mime_type)

        summary: SummaryOutcome | None = None
        if text:
            report("summarizing")
            summary, attempts["summary"] = await self._summarize(text)

        called = [a for a in attempts.values() if a.called]
        fallbacks = [name for name, a in attempts.items() if a.error is not None]
        if called and all(a.error is not None for a in called):
            # Nothing came back from the provider; let the caller retry or degrade.
            raise called[0].error
        if fallbacks:
            logger.info("Partial enrichment | engine=%s fallbacks=%s", self.engine, ",".join(fallbacks))

        field_confidence = {
            "extraction": extracted.confidence,
            "category": classification.confidence,
        }
        if language is not None:
            field_confidence["language"] = language.confidence
        if summary is not None:
            field_confidence["summary"] = _SUMMARY_CONFIDENCE[summary.quality]

        return EnrichmentResult(
            category=classification.category,
            confidence=classification.confidence,
            tags=classification.tags,
            language=language.language if language else None,
            summary=summary.summary if summary else None,
            extracted_dates=classification.dates,
            suggested_name=classification.suggested_name or None,
            engine=self.engine,
            extracted_text=text,
            field_confidence=field_confidence,
            details={
                "word_count": extracted.word_count,
                "extraction_method": extracted.method,
                "used_ocr": extracted.used_ocr,
                "classification_method": classification.method,
                "classification_rule": classification.rule,
                "language_method": language.method if language else None,
                "language_alternatives": [list(a) for a in language.alternatives] if language else [],
                "summary_quality": summary.quality if summary else None,
                "summary_metrics": summary.metrics if summary else {},
                "fallbacks": fallbacks,
            },
        )
