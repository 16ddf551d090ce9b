"""
Unit Tests — Local enrichment rules
═══════════════════════════════════

Pure functions only (no provider): dates, language heuristics, the
classification tables, tags, suggested names, summary grading, TTLCache.
"""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock

import pytest

from app.enrichment.cache import TTLCache
from app.enrichment.classification import (
    MAX_TAGS,
    Entity,
    classify_by_entities,
    classify_by_keywords,
    extract_basic_entities,
    extract_signal_entities,
    generate_tags,
    sanitize_name,
    suggest_name,
)
from app.enrichment.dates import MAX_DATES, extract_dates
from app.enrichment.language import LanguageGuess, detect_language_heuristic, reconcile
from app.enrichment.summarizer import grade_summary, split_sentences
from app.schemas.documents import CATEGORY_VALUES, Category


class FakeClock:

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ─────────────────────────────────────────────────────────────────────────────
# Dates
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestExtractDates:

    def test_numeric_formats_are_normalized(self):
        text = "Issued 2024-03-15, valid from 01.02.2023 until 31/12/2025 (ref 05-06-2022)."
        assert extract_dates(text) == ["15/03/2024", "01/02/2023", "31/12/2025", "05/06/2022"]

    def test_month_names_kept_as_written(self):
        text = "Fait à Paris le 12 mars 2021. Signed on 3 March 2020 and 4 Feb. 2019."
        dates = extract_dates(text)
        assert "12 mars 2021" in dates
        assert "3 March 2020" in dates
        assert "4 Feb. 2019" in dates

    def test_years_outside_range_are_dropped(self):
        assert extract_dates("Founded 12/05/1850, expires 01/01/2099") == []

    def test_invalid_day_or_month_is_dropped(self):
        assert extract_dates("Code 45/13/2020") == []

    def test_duplicates_removed_in_first_seen_order(self):
        text = "2024-03-15 and again 15.03.2024 and 15/03/2024"
        assert extract_dates(text) == ["15/03/2024"]

    def test_output_capped(self):
        text = " ".join(f"{d:02d}/01/2020" for d in range(1, 25))
        dates = extract_dates(text)
        assert len(dates) == MAX_DATES

    def test_every_emitted_year_in_range(self):
        text = "01/01/1899 02/02/1900 03/03/2030 04/04/2031 2010-10-10 7 June 1999"
        for value in extract_dates(text):
            year = int(re.search(r"(\d{4})", value).group(1))
            assert 1900 <= year <= 2030

    def test_empty_text(self):
        assert extract_dates("") == []


# ─────────────────────────────────────────────────────────────────────────────
# Language
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestLanguageHeuristic:

    def test_short_text_is_baseline_with_zero_confidence(self):
        guess = detect_language_heuristic("Hi there")
        assert (guess.language, guess.confidence) == ("en", 0.0)

    def test_macedonian(self):
        guess = detect_language_heuristic("Уверение за положен испит по информатика")
        assert (guess.language, guess.confidence) == ("mk", 0.9)
        assert guess.non_latin

    def test_other_cyrillic_is_serbian(self):
        guess = detect_language_heuristic("Ово је обичан текст на српском језику")
        assert (guess.language, guess.confidence) == ("sr", 0.8)

    def test_french(self):
        guess = detect_language_heuristic("Attestation de formation pour le cours")
        assert (guess.language, guess.confidence) == ("fr", 0.8)

    def test_german(self):
        guess = detect_language_heuristic("Das ist ein Vertrag mit der Firma und nicht mehr")
        assert guess.language == "de"

    def test_spanish(self):
        guess = detect_language_heuristic("Los documentos para la empresa con el contrato")
        assert guess.language == "es"

    def test_default_english(self):
        guess = detect_language_heuristic("This quarterly report covers revenue growth")
        assert (guess.language, guess.confidence) == ("en", 0.5)

    def test_heuristic_wins_when_more_confident(self):
        ai = LanguageGuess("en", 0.6, method="ai")
        heuristic = LanguageGuess("fr", 0.8)
        assert reconcile(ai, heuristic) is heuristic

    def test_heuristic_wins_when_ai_answers_baseline_for_cyrillic(self):
        ai = LanguageGuess("en", 0.95, method="ai")
        heuristic = LanguageGuess("mk", 0.9, non_latin=True)
        assert reconcile(ai, heuristic) is heuristic

    def test_ai_kept_otherwise(self):
        ai = LanguageGuess("it", 0.97, method="ai")
        heuristic = LanguageGuess("en", 0.5)
        assert reconcile(ai, heuristic) is ai


# ─────────────────────────────────────────────────────────────────────────────
# Classification tables
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestClassificationTables:

    def test_org_plus_education_keywords(self):
        entities = [Entity("Université de Lyon", "ORG")]
        assert classify_by_entities("Diplôme de l'université", entities)[:2] == (Category.EDUCATION, 0.85)

    def test_person_date_medical(self):
        entities = [Entity("John Smith", "PER"), Entity("01/02/2024", "DATE")]
        category, confidence, rule = classify_by_entities("Patient seen at the clinic", entities)
        assert (category, rule) == (Category.MEDICAL, "person_date_medical")

    def test_money_label_alone_is_financial(self):
        category, _, rule = classify_by_entities("Total", [Entity("$40", "MONEY")])
        assert (category, rule) == (Category.FINANCIAL, "price_financial")

    def test_rules_are_ordered(self):
        # ORG + education wins over the legal row even with legal keywords present
        entities = [Entity("Acme University", "ORG")]
        category, _, _ = classify_by_entities("University course contract", entities)
        assert category is Category.EDUCATION

    def test_no_rule_matches(self):
        assert classify_by_entities("nothing to see", [Entity("Paris", "LOC")]) is None

    @pytest.mark.parametrize("text, expected", [
        ("Invoice number 42", Category.FINANCIAL),
        ("Court settlement agreement", Category.LEGAL),
        ("Prescription from Dr. House", Category.MEDICAL),
        ("Transcript of records", Category.EDUCATION),
        ("Boarding pass for flight AF123", Category.TRAVEL),
        ("Annual tax return", Category.TAX),
        ("IBAN and account number", Category.BANKING),
        ("Salary slip from employer", Category.EMPLOYMENT),
        ("Broadband internet", Category.UTILITIES),
        ("Mortgage for the apartment", Category.REAL_ESTATE),
        ("User guide and warranty", Category.TECHNICAL),
    ])
    def test_keyword_table(self, text, expected):
        assert classify_by_keywords(text) == (expected, 0.6)

    def test_keyword_fallbacks(self):
        assert classify_by_keywords("", "holiday.jpg") == (Category.PHOTOS, 0.4)
        assert classify_by_keywords("", "x", "image/png") == (Category.PHOTOS, 0.4)
        assert classify_by_keywords("hello world") == (Category.PERSONAL, 0.3)
        assert classify_by_keywords("") == (Category.UNCATEGORIZED, 0.0)

    @pytest.mark.parametrize("text", ["", "   ", "zzz", "Invoice", "Уверение", "\x00\x01"])
    def test_category_always_in_closed_set(self, text):
        category, _ = classify_by_keywords(text)
        assert category.value in CATEGORY_VALUES

    def test_signal_entities(self):
        labels = {e.label for e in extract_signal_entities("Pay €120 to bob@example.com by 2024-01-31")}
        assert labels == {"DATE", "MONEY", "EMAIL"}

    def test_basic_entities_find_people_and_orgs(self):
        entities = extract_basic_entities("Signed by Marie Curie for Acme Corp")
        assert Entity("Marie Curie", "PER", 0.6) in entities
        assert any(e.label == "ORG" for e in entities)


@pytest.mark.unit
class TestTagsAndNames:

    def test_tags_deduped_and_capped(self):
        entities = [Entity("A B", "PER"), Entity("C D", "PER"), Entity("X", "ORG"), Entity("Y", "LOC")]
        text = "certificate diploma university training insurance premium passport invoice receipt contract"
        tags = generate_tags(text, Category.EDUCATION, entities)
        assert tags[0] == "education"
        assert tags.count("person") == 1
        assert len(tags) == MAX_TAGS

    def test_sanitize_name(self):
        assert sanitize_name("  Jean Dupont / Résumé!! ") == "Jean_Dupont_R_sum"
        assert len(sanitize_name("x" * 80)) == 50

    def test_suggest_name_with_person_and_date(self):
        name = suggest_name("Invoice", Category.FINANCIAL, [Entity("Jane Doe", "PER")], ["15/03/2024"])
        assert name == "Jane_Doe_Financial_Document_15_03_2024"

    def test_suggest_name_attestation(self):
        name = suggest_name(
            "Attestation de formation en informatique",
            Category.EDUCATION,
            [Entity("Jean Dupont", "PER")],
            [],
        )
        assert name == "Attestation_Informatique_Jean_Dupont"

    def test_suggest_name_falls_back_to_category(self):
        assert suggest_name("", Category.TAX, [], []) == "Tax_Document"


# ─────────────────────────────────────────────────────────────────────────────
# Summary grading
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestGradeSummary:

    SOURCE = (
        "The contract covers consulting services. Payment is due in thirty days. "
        "Late payment incurs a fee. Either party may terminate with notice."
    )

    def test_clean_candidate_is_high(self):
        outcome = grade_summary(self.SOURCE, "Consulting contract with thirty-day payment terms.", 200)
        assert outcome.quality == "high"
        assert outcome.metrics["sentence_count"] == 1

    def test_candidate_without_sentence_end_is_repacked(self):
        outcome = grade_summary(self.SOURCE, "consulting contract with payment terms", 200)
        assert outcome.quality == "medium"

    def test_source_sentences_packed_when_no_candidate(self):
        outcome = grade_summary(self.SOURCE, None, 80)
        assert outcome.quality == "medium"
        assert outcome.summary in self.SOURCE
        assert len(outcome.summary) <= 80

    def test_truncation_is_low(self):
        outcome = grade_summary("word " * 100, None, 30)
        assert outcome.quality == "low"
        assert outcome.summary.endswith("...")
        assert len(outcome.summary) <= 30

    def test_metrics(self):
        outcome = grade_summary(self.SOURCE, "Short.", 200)
        assert outcome.metrics["original_length"] == len(self.SOURCE)
        assert outcome.metrics["summary_length"] == 6
        assert 0 < outcome.metrics["compression_ratio"] < 1

    def test_split_sentences(self):
        assert split_sentences("One. Two! Three?") == ["One.", "Two!", "Three?"]


# ─────────────────────────────────────────────────────────────────────────────
# TTLCache
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestTTLCache:

    async def test_hit_within_ttl_skips_loader(self):
        clock = FakeClock()
        cache = TTLCache(600, clock=clock)
        loader = AsyncMock(return_value={"text": "Bonjour"})

        first = await cache.get_or_refresh("k", loader)
        clock.now += 599
        second = await cache.get_or_refresh("k", loader)

        assert first is second
        loader.assert_awaited_once()

    async def test_expiry_triggers_exactly_one_refresh(self):
        clock = FakeClock()
        cache = TTLCache(600, clock=clock)
        loader = AsyncMock(side_effect=["v1", "v2", "v3"])

        await cache.get_or_refresh("k", loader)
        clock.now += 600
        assert await cache.get_or_refresh("k", loader) == "v2"
        assert await cache.get_or_refresh("k", loader) == "v2"
        assert loader.await_count == 2

    async def test_concurrent_expired_reads_share_one_refresh(self):
        clock = FakeClock()
        cache = TTLCache(600, clock=clock)
        release = asyncio.Event()
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await release.wait()
            return f"v{calls}"

        cache.set("k", "v0")
        clock.now += 600
        tasks = [asyncio.create_task(cache.get_or_refresh("k", loader)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(*tasks) == ["v1"] * 5
        assert calls == 1
        assert cache.get("k") == "v1"

    async def test_concurrent_waiters_share_the_failure(self):
        cache = TTLCache(600, clock=FakeClock())
        release = asyncio.Event()
        loader_calls = 0

        async def failing_loader():
            nonlocal loader_calls
            loader_calls += 1
            await release.wait()
            raise RuntimeError("provider down")

        tasks = [asyncio.create_task(cache.get_or_refresh("k", failing_loader)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert loader_calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert await cache.get_or_refresh("k", AsyncMock(return_value="ok")) == "ok"

    def test_get_set_and_expiry(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set(("a", "auto", "fr"), "x")
        assert cache.get(("a", "auto", "fr")) == "x"
        clock.now += 10
        assert cache.get(("a", "auto", "fr")) is None

    def test_clear(self):
        cache = TTLCache(10)
        cache.set("a", 1)
        cache.set("b", 2)
        assert len(cache) == 2
        cache.clear()
        assert len(cache) == 0
