"""
Translation API Router

  POST /api/v1/translate            translate text; source auto-detected when omitted
  GET  /api/v1/translate/languages  languages the primary engine supports

Both responses are served from the enrichment client's TTL caches when warm.
"""

from __future__ import annotations

from fastapi import APIRouter

from app.api.deps import Enrichment
from app.schemas.documents import ErrorResponse, TranslateRequest, TranslationResult

router = APIRouter(
    prefix="/translate",
    tags=["Translation"],
)


@router.post(
    "",
    response_model=TranslationResult,
    summary="Translate text",
    responses={
        502: {"model": ErrorResponse, "description": "Provider rejected the language pair"},
        503: {"model": ErrorResponse, "description": "Provider unavailable"},
    },
)
async def translate(body: TranslateRequest, enrichment: Enrichment) -> TranslationResult:
    return await enrichment.translate(body.text, body.target_lang, body.source_lang)


@router.get(
    "/languages",
    summary="List supported languages",
)
async def supported_languages(enrichment: Enrichment) -> dict:
    languages = await enrichment.supported_languages()
    return {"languages": languages, "count": len(languages)}
