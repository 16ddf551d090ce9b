"""
Enrichment Providers — remote AI engines behind one interface.

  EnrichmentProvider (ABC)
   ├── HuggingFaceProvider    HF inference API, one model per operation
   └── RemoteEngineProvider   generic JSON engine (the secondary engine
                              in two-engine reprocessing)

Providers are thin: one HTTP round trip per call, no retries, no
fallbacks. Retrying is the RetryExecutor's job; fallbacks live in
EnrichmentClient. Every failure leaves here as a taxonomy error:

    401 403 400 404 422          → PermanentServiceError
    408 429 5xx                  → TransientServiceError
    httpx.TransportError         → TransientServiceError
    HF "model is loading" body   → TransientServiceError
    unexpected JSON shape        → PermanentServiceError

Each provider owns one httpx.AsyncClient, created in the constructor and
closed via aclose() from the application lifespan. Pass `transport=` to
inject an httpx.MockTransport in tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator

import httpx

from app.core.exceptions import PermanentServiceError, TransientServiceError
from app.enrichment.classification import Entity
from app.enrichment.language import LanguageGuess

logger = logging.getLogger(__name__)

PERMANENT_STATUSES = frozenset({400, 401, 403, 404, 422})
TRANSIENT_STATUSES = frozenset({408, 429})

# Input caps per operation (characters)
NER_INPUT_CHARS        = 2000
ZERO_SHOT_INPUT_CHARS  = 1000
SUMMARY_INPUT_CHARS    = 3000
TRANSLATE_INPUT_CHARS  = 2000
LANGUAGE_INPUT_CHARS   = 2000

SUPPORTED_LANGUAGES: tuple[tuple[str, str], ...] = (
    ("en", "English"),
    ("fr", "French"),
    ("de", "German"),
    ("es", "Spanish"),
    ("it", "Italian"),
    ("pt", "Portuguese"),
    ("ru", "Russian"),
    ("zh", "Chinese"),
    ("ar", "Arabic"),
    ("mk", "Macedonian"),
)

# opus-mt ships Macedonian inside the South-Slavic group model
_OPUS_CODES = {"mk": "sla"}


class EnrichmentProvider(ABC):
    """One remote AI engine."""

    name: str = "provider"

    @abstractmethod
    async def detect_language(self, text: str) -> LanguageGuess: ...

    @abstractmethod
    async def extract_entities(self, text: str) -> list[Entity]: ...

    @abstractmethod
    async def classify_zero_shot(self, text: str, labels: list[str]) -> list[tuple[str, float]]:
        """Return (label, score) pairs sorted by descending score."""

    @abstractmethod
    async def summarize(self, text: str, max_length: int) -> str: ...

    @abstractmethod
    async def translate(self, text: str, source_lang: str, target_lang: str) -> str: ...

    @abstractmethod
    async def supported_languages(self) -> list[dict[str, str]]: ...

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------

class _HttpProvider(EnrichmentProvider):

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            resp = await self._client.request(method, url, json=payload)
        except httpx.TransportError as exc:
            raise TransientServiceError(
                f"{self.name} network error: {exc}", service=self.name
            ) from exc

        status = resp.status_code
        if status in PERMANENT_STATUSES:
            raise PermanentServiceError(
                f"{self.name} rejected request: HTTP {status}", service=self.name, status_code=status
            )
        if status in TRANSIENT_STATUSES or status >= 500:
            raise TransientServiceError(
                f"{self.name} unavailable: HTTP {status}", service=self.name, status_code=status
            )
        if resp.is_error:
            raise PermanentServiceError(
                f"{self.name} error: HTTP {status}", service=self.name, status_code=status
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise PermanentServiceError(
                f"{self.name} returned malformed JSON", service=self.name, status_code=status
            ) from exc


def _flatten_scores(body: Any) -> list[dict[str, Any]]:
    """HF text-classification answers either [[{...}]] or [{...}]."""
    if isinstance(body, list) and body and isinstance(body[0], list):
        body = body[0]
    return [item for item in body or [] if isinstance(item, dict)]


# ---------------------------------------------------------------------------
# Hugging Face inference API
# ---------------------------------------------------------------------------

class HuggingFaceProvider(_HttpProvider):

    name = "huggingface"

    def __init__(
        self,
        api_token: str,
        base_url: str,
        language_model: str,
        ner_model: str,
        classification_model: str,
        summarization_model: str,
        translation_model: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url,
            headers={"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self._language_model = language_model
        self._ner_model = ner_model
        self._classification_model = classification_model
        self._summarization_model = summarization_model
        self._translation_model = translation_model

    async def _infer(self, model: str, payload: dict[str, Any]) -> Any:
        body = await self._request("POST", model, payload)
        if isinstance(body, dict) and body.get("error"):
            error = str(body["error"])
            if "loading" in error.lower():
                raise TransientServiceError(f"{model}: model is loading", service=self.name)
            raise PermanentServiceError(f"{model}: {error}", service=self.name)
        return body

    async def detect_language(self, text: str) -> LanguageGuess:
        body = await self._infer(self._language_model, {"inputs": text[:LANGUAGE_INPUT_CHARS]})
        scores = sorted(
            ((str(s.get("label", "")).lower(), float(s.get("score", 0.0))) for s in _flatten_scores(body)),
            key=lambda pair: pair[1],
            reverse=True,
        )
        if not scores:
            raise PermanentServiceError("Language model returned no labels", service=self.name)
        language, confidence = scores[0]
        return LanguageGuess(language, confidence, scores[:3], method="ai")

    async def extract_entities(self, text: str) -> list[Entity]:
        body = await self._infer(
            self._ner_model,
            {"inputs": text[:NER_INPUT_CHARS], "parameters": {"aggregation_strategy": "simple"}},
        )
        entities = []
        for item in _flatten_scores(body):
            label = str(item.get("entity_group") or item.get("entity") or "").upper()
            label = label.removeprefix("B-").removeprefix("I-")
            word = str(item.get("word", "")).strip()
            if label and word:
                entities.append(Entity(word, label, float(item.get("score", 0.0))))
        return entities

    async def classify_zero_shot(self, text: str, labels: list[str]) -> list[tuple[str, float]]:
        body = await self._infer(
            self._classification_model,
            {"inputs": text[:ZERO_SHOT_INPUT_CHARS], "parameters": {"candidate_labels": labels}},
        )
        if not isinstance(body, dict):
            raise PermanentServiceError("Zero-shot model returned unexpected body", service=self.name)
        pairs = zip(body.get("labels", []), body.get("scores", []))
        return sorted(((str(l), float(s)) for l, s in pairs), key=lambda p: p[1], reverse=True)

    async def summarize(self, text: str, max_length: int) -> str:
        body = await self._infer(
            self._summarization_model,
            {
                "inputs": text[:SUMMARY_INPUT_CHARS],
                "parameters": {"max_length": max_length, "min_length": min(50, max_length // 2)},
            },
        )
        items = _flatten_scores(body)
        return str(items[0].get("summary_text", "")) if items else ""

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        model = self._translation_model.format(
            source=_OPUS_CODES.get(source_lang, source_lang),
            target=_OPUS_CODES.get(target_lang, target_lang),
        )
        body = await self._infer(model, {"inputs": text[:TRANSLATE_INPUT_CHARS]})
        items = _flatten_scores(body)
        return str(items[0].get("translation_text", "")) if items else ""

    async def supported_languages(self) -> list[dict[str, str]]:
        # The inference API has no listing endpoint; opus-mt pairs are fixed.
        return [{"code": code, "name": name} for code, name in SUPPORTED_LANGUAGES]


# ---------------------------------------------------------------------------
# Generic JSON engine
# ---------------------------------------------------------------------------

class RemoteEngineProvider(_HttpProvider):
    """
    Endpoints (all JSON):
        POST /language   {text}                 → {language, confidence, alternatives}
        POST /entities   {text}                 → {entities: [{text, label, score}]}
        POST /classify   {text, labels}         → {labels: [{label, score}]}
        POST /summarize  {text, max_length}     → {summary}
        POST /translate  {text, source, target} → {translated_text}
        GET  /languages                         → {languages: [{code, name}]}
    """

    name = "secondary"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        name: str = "secondary",
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        super().__init__(base_url, headers=headers, timeout=timeout, transport=transport)
        self.name = name

    async def detect_language(self, text: str) -> LanguageGuess:
        body = await self._request("POST", "language", {"text": text[:LANGUAGE_INPUT_CHARS]})
        with self._reading("language", body):
            alternatives = [(str(a[0]), float(a[1])) for a in body.get("alternatives", []) if len(a) == 2]
            return LanguageGuess(
                str(body.get("language", "en")),
                float(body.get("confidence", 0.0)),
                alternatives,
                method="ai",
            )

    async def extract_entities(self, text: str) -> list[Entity]:
        body = await self._request("POST", "entities", {"text": text[:NER_INPUT_CHARS]})
        with self._reading("entities", body):
            return [
                Entity(str(e["text"]), str(e["label"]).upper(), float(e.get("score", 0.5)))
                for e in body.get("entities", [])
                if e.get("text") and e.get("label")
            ]

    async def classify_zero_shot(self, text: str, labels: list[str]) -> list[tuple[str, float]]:
        body = await self._request("POST", "classify", {"text": text[:ZERO_SHOT_INPUT_CHARS], "labels": labels})
        with self._reading("classify", body):
            pairs = [(str(i["label"]), float(i.get("score", 0.0))) for i in body.get("labels", [])]
        return sorted(pairs, key=lambda p: p[1], reverse=True)

    async def summarize(self, text: str, max_length: int) -> str:
        body = await self._request(
            "POST", "summarize", {"text": text[:SUMMARY_INPUT_CHARS], "max_length": max_length}
        )
        with self._reading("summarize", body):
            return str(body.get("summary") or "")

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        body = await self._request(
            "POST",
            "translate",
            {"text": text[:TRANSLATE_INPUT_CHARS], "source": source_lang, "target": target_lang},
        )
        with self._reading("translate", body):
            return str(body.get("translated_text") or "")

    async def supported_languages(self) -> list[dict[str, str]]:
        body = await self._request("GET", "languages")
        with self._reading("languages", body):
            return [
                {"code": str(l["code"]), "name": str(l.get("name", l["code"]))}
                for l in body.get("languages", [])
            ]

    @contextmanager
    def _reading(self, endpoint: str, body: Any) -> Iterator[dict[str, Any]]:
        """Any shape mismatch while reading `body` becomes a PermanentServiceError."""
        if not isinstance(body, dict):
            raise PermanentServiceError(
                f"{self.name} /{endpoint}: malformed body, expected object got {type(body).__name__}",
                service=self.name,
            )
        try:
            yield body
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PermanentServiceError(
                f"{self.name} /{endpoint}: malformed body ({exc!r})", service=self.name
            ) from exc
