"""Document classification pipeline.

Runs three remote steps in order (text and face extraction, language
detection, type and country classification), then applies the fixed
requirement rules. Any failing step aborts the whole analysis; the
pipeline never certifies a document as valid or invalid on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.core.config import settings
from app.models import AnalysisResult, AnalysisStatus, DocumentType
from app.services.exceptions import DocumentAnalysisError, ExternalServiceError
from app.services.llm import LLMClient
from app.services.ocr import TextExtractor
from app.services.requirements import WORKING_LANGUAGE, get_document_requirements

logger = logging.getLogger(__name__)

APOSTILLE_MARKER = "apostill"
ANALYSIS_CONDITION = "Document under analysis"
ANALYSIS_FAILED_MESSAGE = "Error analyzing the document. Please try again."

LANGUAGE_SYSTEM_PROMPT = (
    "You are a linguistic expert specialized in identifying languages in official documents."
)
CLASSIFICATION_SYSTEM_PROMPT = "You are an expert in official documentation."


@dataclass(frozen=True)
class LanguageDetection:
    is_working_language: bool
    detected_language: str
    confidence: float


@dataclass(frozen=True)
class DocumentClassification:
    document_type: DocumentType
    country: str
    confidence: float


def build_language_prompt(text: str) -> str:
    return f'''Analyze the following text and determine its main language. IGNORE proper names, places, dates and numbers.

Text from document:
"""
{text}
"""

IMPORTANT INSTRUCTIONS:
1. Analyze the complete text, paying special attention to:
   - Function words (articles, prepositions, conjunctions)
   - Administrative and bureaucratic terms
   - Grammar structure and syntax

2. COMPLETELY IGNORE:
   - People's proper names
   - Place and country names
   - Dates and numbers
   - Official seals
   - Signatures and titles

Respond in JSON format:
{{
  "isSpanish": boolean (true if text is mainly in {WORKING_LANGUAGE}),
  "detectedLanguage": string (name of main detected language),
  "confidence": number (0-1, confidence level in detection)
}}'''


def build_classification_prompt(text: str, *, has_face: bool) -> str:
    face = "contains" if has_face else "does not contain"
    valid_types = "\n".join(f"- {document_type.value}" for document_type in DocumentType)
    return f'''Classify the following document based on its content. The document {face} a face photo.

Text from document:
"""
{text}
"""

Valid document types:
{valid_types}

Respond in JSON format:
{{
  "documentType": "document type from the list above",
  "country": "document's country of origin",
  "confidence": "number between 0 and 1 indicating classification confidence"
}}'''


class DocumentAnalyzer:
    def __init__(
        self,
        *,
        text_extractor: TextExtractor,
        llm: LLMClient,
        review_country: str | None = None,
    ) -> None:
        self.text_extractor = text_extractor
        self.llm = llm
        self.review_country = review_country or settings.REVIEW_COUNTRY

    def detect_language(self, text: str) -> LanguageDetection:
        reply = self.llm.complete_json(
            system_prompt=LANGUAGE_SYSTEM_PROMPT,
            user_prompt=build_language_prompt(text),
            temperature=settings.LLM_ANALYSIS_TEMPERATURE,
        )
        if "isSpanish" not in reply:
            raise ExternalServiceError("llm", "Language detection reply is incomplete")
        return LanguageDetection(
            is_working_language=_as_bool(reply["isSpanish"]),
            detected_language=str(reply.get("detectedLanguage") or "Unknown"),
            confidence=_as_confidence(reply.get("confidence")),
        )

    def classify(self, text: str, *, has_face: bool) -> DocumentClassification:
        reply = self.llm.complete_json(
            system_prompt=CLASSIFICATION_SYSTEM_PROMPT,
            user_prompt=build_classification_prompt(text, has_face=has_face),
            temperature=settings.LLM_ANALYSIS_TEMPERATURE,
        )
        try:
            document_type = DocumentType(str(reply.get("documentType", "")).strip())
        except ValueError as exc:
            raise ExternalServiceError(
                "llm", f"Unexpected document type: {reply.get('documentType')!r}"
            ) from exc
        return DocumentClassification(
            document_type=document_type,
            country=str(reply.get("country") or "Unknown"),
            confidence=_as_confidence(reply.get("confidence")),
        )

    def analyze(self, content: bytes, mime_type: str) -> AnalysisResult:
        try:
            extraction = self.text_extractor.extract(content, mime_type)
            language = self.detect_language(extraction.text)
            classification = self.classify(extraction.text, has_face=extraction.has_face)
        except ExternalServiceError as exc:
            logger.warning("Document analysis aborted at %s: %s", exc.service, exc.message)
            raise DocumentAnalysisError(ANALYSIS_FAILED_MESSAGE) from exc

        requirements = get_document_requirements(
            classification.document_type,
            is_working_language=language.is_working_language,
        )
        logger.info(
            "Classified document as %s from %s (language=%s, confidence=%.2f)",
            classification.document_type.value,
            classification.country,
            language.detected_language,
            classification.confidence,
        )
        return AnalysisResult(
            document_type=classification.document_type,
            country=classification.country,
            is_apostilled=APOSTILLE_MARKER in extraction.text.lower(),
            status=AnalysisStatus.REVIEW,
            condition=ANALYSIS_CONDITION,
            observations=[
                f"Detected language: {language.detected_language}",
                "Verify data authenticity",
                "Ensure data matches other submitted documents",
                f"Confirm document meets specific requirements for {self.review_country}",
            ],
            requirements=requirements,
            validity_period=requirements.validity.validity_period,
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, confidence))
