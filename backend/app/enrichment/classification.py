"""
Document classification tables.

Three layers, all data-driven:

  1. ENTITY_RULES — ordered decision table over AI entity signals
     (PER / ORG / LOC from NER, plus locally detected DATE / MONEY) and
     keyword evidence. First matching row wins.

  2. ZERO_SHOT_LABELS — candidate labels for the zero-shot classifier,
     mapped onto the closed category set. Consulted when no entity rule
     matches.

  3. KEYWORD_RULES — deterministic fallback used when the AI calls fail
     entirely. Same closed category set; personal / uncategorized when
     nothing matches.

The category returned by every path is a member of Category — never
None, never an empty string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from app.enrichment.dates import extract_dates
from app.schemas.documents import Category


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Entity:
    text:  str
    label: str      # PER | ORG | LOC | MISC | DATE | MONEY | EMAIL
    score: float = 0.5


_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_MONEY_RE = re.compile(
    r"([$€£]\s?\d[\d.,]*|\d[\d.,]*\s?(€|eur|usd|chf|mkd|ден)\b)",
    re.IGNORECASE,
)
_NAME_RE = re.compile(r"\b[A-Z][a-z]+\s+[A-Z][a-z]+\b")
_ORG_RE = re.compile(
    r"\b[A-Z][a-zA-Z]*\s*(Inc|Corp|Ltd|LLC|SA|GmbH|AG|SRL|SARL|University|Université|Универзитет)\b"
)


def extract_signal_entities(text: str) -> list[Entity]:
    """DATE / MONEY / EMAIL entities the NER model does not emit."""
    entities: list[Entity] = []
    for date in extract_dates(text, limit=3):
        entities.append(Entity(date, "DATE", 0.9))
    for match in _MONEY_RE.finditer(text):
        entities.append(Entity(match.group(0), "MONEY", 0.8))
        if len(entities) > 8:
            break
    for email in _EMAIL_RE.findall(text)[:3]:
        entities.append(Entity(email, "EMAIL", 0.9))
    return entities


def extract_basic_entities(text: str) -> list[Entity]:
    """Rule-based stand-in for NER when the provider is unreachable."""
    entities = extract_signal_entities(text)
    entities.extend(Entity(m, "PER", 0.6) for m in _NAME_RE.findall(text)[:5])
    entities.extend(Entity(m.group(0), "ORG", 0.7) for m in list(_ORG_RE.finditer(text))[:3])
    return entities


# ---------------------------------------------------------------------------
# Keyword vocabularies
# ---------------------------------------------------------------------------

def _kw(regex: str) -> re.Pattern[str]:
    return re.compile(regex, re.IGNORECASE)


EDUCATION_KW = _kw(
    r"certificate|certificat|attestation|diploma|diplôme|universit(y|é)|универзитет|уверение|"
    r"school|course|cours|formation|degree|transcript|graduation|диплома"
)
MEDICAL_KW = _kw(
    r"hospital|clinic|doctor|prescription|diagnosis|medical|healthcare|medication|patient|"
    r"médecin|ordonnance|\bhealth\b"
)
LEGAL_KW = _kw(r"contract|agreement|clause|court|attorney|\blegal\b|settlement|terms and conditions|contrat")
FINANCIAL_KW = _kw(
    r"invoice|receipt|\bvat\b|amount due|facture|reçu|total\s*[$€£]|\bpayment\b|\bbill\b|"
    r"\bprice\b|фактура|subtotal"
)
INSURANCE_KW = _kw(r"insurance|assurance|policy number|\bpremium\b|\bprime\b|coverage|\bclaim\b")
GOVERNMENT_KW = _kw(
    r"passport|\bvisa\b|identity card|carte d'identité|ministry|ministère|municipal|republic|"
    r"république|пасош|република"
)
TRAVEL_KW = _kw(r"boarding pass|itinerary|\bflight\b|booking|\bhotel\b|\btrip\b|travel")


# ---------------------------------------------------------------------------
# 1. Entity decision table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityRule:
    name:        str
    category:    Category
    confidence:  float
    all_labels:  frozenset[str]               # every label must be present
    keywords:    re.Pattern[str] | None       # evidence in the text …
    any_labels:  frozenset[str] = frozenset() # … or any one of these labels

    def matches(self, text: str, labels: set[str]) -> bool:
        if not self.all_labels <= labels:
            return False
        if self.any_labels & labels:
            return True
        return self.keywords is None or bool(self.keywords.search(text))


ENTITY_RULES: tuple[EntityRule, ...] = (
    EntityRule("org_education", Category.EDUCATION, 0.85, frozenset({"ORG"}), EDUCATION_KW),
    EntityRule("person_date_medical", Category.MEDICAL, 0.85, frozenset({"PER", "DATE"}), MEDICAL_KW),
    EntityRule("org_legal", Category.LEGAL, 0.85, frozenset({"ORG"}), LEGAL_KW),
    EntityRule("price_financial", Category.FINANCIAL, 0.8, frozenset(), FINANCIAL_KW, frozenset({"MONEY"})),
    EntityRule("insurance", Category.INSURANCE, 0.8, frozenset(), INSURANCE_KW),
    EntityRule("government", Category.GOVERNMENT, 0.75, frozenset(), GOVERNMENT_KW),
    EntityRule("person_travel", Category.TRAVEL, 0.75, frozenset({"PER"}), TRAVEL_KW),
    EntityRule("person_education", Category.EDUCATION, 0.7, frozenset({"PER"}), EDUCATION_KW),
)


def classify_by_entities(text: str, entities: list[Entity]) -> tuple[Category, float, str] | None:
    labels = {e.label for e in entities}
    for rule in ENTITY_RULES:
        if rule.matches(text, labels):
            return rule.category, rule.confidence, rule.name
    return None


# ---------------------------------------------------------------------------
# 2. Zero-shot labels
# ---------------------------------------------------------------------------

ZERO_SHOT_LABELS: dict[str, Category] = {
    "financial document invoice receipt": Category.FINANCIAL,
    "legal contract agreement document":  Category.LEGAL,
    "medical health report document":     Category.MEDICAL,
    "educational course training document": Category.EDUCATION,
    "insurance policy document":          Category.INSURANCE,
    "government official document":       Category.GOVERNMENT,
    "travel booking document":            Category.TRAVEL,
    "personal identity document":         Category.PERSONAL,
}

ZERO_SHOT_MIN_SCORE = 0.5


# ---------------------------------------------------------------------------
# 3. Keyword fallback table
# ---------------------------------------------------------------------------

KEYWORD_RULES: tuple[tuple[Category, re.Pattern[str]], ...] = (
    (Category.FINANCIAL, FINANCIAL_KW),
    (Category.LEGAL, LEGAL_KW),
    (Category.MEDICAL, MEDICAL_KW),
    (Category.EDUCATION, EDUCATION_KW),
    (Category.TRAVEL, _kw(r"passport|\bvisa\b|boarding pass|itinerary|booking|\bhotel\b|\bflight\b|travel")),
    (Category.INSURANCE, INSURANCE_KW),
    (Category.TAX, _kw(r"\btax\b|\birs\b|deduction|\bw-?2\b|\b1099\b|tax return|filing|impôt")),
    (Category.BANKING, _kw(r"\bbank\b|account number|\biban\b|balance|transaction|\bcredit\b|\bdebit\b|\bloan\b")),
    (Category.EMPLOYMENT, _kw(r"employment|\bjob\b|resume|\bcv\b|interview|salary|payroll|employer")),
    (Category.UTILITIES, _kw(r"utility|electric|water bill|\bgas\b|phone bill|internet|broadband")),
    (Category.REAL_ESTATE, _kw(r"real estate|property|\blease\b|\brent\b|mortgage|\bdeed\b|apartment")),
    (Category.TECHNICAL, _kw(r"warranty|manual|instruction|user guide|technical|specification")),
)

KEYWORD_CONFIDENCE = 0.6

_IMAGE_NAME_RE = re.compile(r"photo|image|picture|scan|screenshot|\.(jpe?g|png|gif|bmp|tiff?)$", re.IGNORECASE)


def classify_by_keywords(
    text: str,
    filename: str = "",
    mime_type: str = "",
) -> tuple[Category, float]:
    for category, pattern in KEYWORD_RULES:
        if pattern.search(text or ""):
            return category, KEYWORD_CONFIDENCE

    if mime_type.startswith("image/") or _IMAGE_NAME_RE.search(filename or ""):
        return Category.PHOTOS, 0.4
    if text and text.strip():
        return Category.PERSONAL, 0.3
    return Category.UNCATEGORIZED, 0.0


# ---------------------------------------------------------------------------
# Tags and suggested names
# ---------------------------------------------------------------------------

MAX_TAGS = 8

_CONTENT_TAGS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("certificate", _kw(r"attestation|certificat")),
    ("diploma", _kw(r"diploma|diplôme|диплома")),
    ("university", _kw(r"universit(y|é)|универзитет")),
    ("training", _kw(r"formation|training|course")),
    ("insurance", _kw(r"insurance|assurance")),
    ("premium", _kw(r"\bprime\b|\bpremium\b")),
    ("passport", _kw(r"passport|пасош")),
    ("invoice", _kw(r"invoice|facture|фактура")),
    ("receipt", _kw(r"receipt|reçu")),
    ("contract", _kw(r"contract|contrat|agreement")),
)

_ENTITY_TAGS = {"PER": "person", "ORG": "organization", "LOC": "location"}


def generate_tags(text: str, category: Category, entities: list[Entity]) -> list[str]:
    tags: list[str] = [category.value]
    for entity in entities:
        tag = _ENTITY_TAGS.get(entity.label)
        if tag:
            tags.append(tag)
    for tag, pattern in _CONTENT_TAGS:
        if pattern.search(text or ""):
            tags.append(tag)
    return list(dict.fromkeys(tags))[:MAX_TAGS]


_CATEGORY_NAMES: dict[Category, str] = {
    Category.FINANCIAL:  "Financial_Document",
    Category.LEGAL:      "Legal_Document",
    Category.MEDICAL:    "Medical_Document",
    Category.EDUCATION:  "Education_Certificate",
    Category.GOVERNMENT: "Government_Document",
    Category.INSURANCE:  "Insurance_Document",
    Category.PERSONAL:   "Personal_Document",
}

MAX_NAME_LENGTH = 50


def sanitize_name(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9_\-.]", "_", name)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    return cleaned[:MAX_NAME_LENGTH]


def suggest_name(
    text: str,
    category: Category,
    entities: list[Entity],
    dates: list[str],
) -> str:
    person = next((e.text for e in entities if e.label in ("PER", "PERSON")), "")
    date = dates[0] if dates else ""

    if "attestation" in (text or "").lower():
        base = "Attestation_Informatique" if "informatique" in text.lower() else "Attestation"
        name = f"{base}_{person}" if person else base
    else:
        base = _CATEGORY_NAMES.get(category) or f"{category.value.title().replace('_', '')}_Document"
        name = f"{person}_{base}" if person else base

    if date:
        name = f"{name}_{date}"
    return sanitize_name(name) or "Document"
