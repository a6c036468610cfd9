"""Process-scoped services shared by every request.

The context is built once in the application lifespan and handed to
routes through the ``ContextDep`` dependency, so tests can swap in fakes
with ``app.dependency_overrides``.
"""

import logging
from dataclasses import dataclass

import httpx
from fastapi import Request

from app.core.config import settings
from app.core.events import ChangeFeed
from app.services.chatbot import ChatResponder
from app.services.document_analysis import DocumentAnalyzer
from app.services.intake import DocumentIntakeService
from app.services.llm import LLMClient, build_llm_client
from app.services.ocr import TextExtractor, build_text_extractor
from app.services.storage import LocalFileStorage, build_storage

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    storage: LocalFileStorage
    text_extractor: TextExtractor
    llm: LLMClient
    change_feed: ChangeFeed
    http_client: httpx.Client

    @classmethod
    def initialize(cls, http_client: httpx.Client | None = None) -> "ServiceContext":
        client = http_client or httpx.Client(timeout=settings.LLM_TIMEOUT_SECONDS)
        context = cls(
            storage=build_storage(),
            text_extractor=build_text_extractor(client),
            llm=build_llm_client(client),
            change_feed=ChangeFeed(),
            http_client=client,
        )
        logger.info(
            "Service context ready (ocr=%s, llm=%s)",
            settings.OCR_PROVIDER,
            "enabled" if context.llm.enabled else "disabled",
        )
        return context

    def teardown(self) -> None:
        self.change_feed.close()
        self.http_client.close()

    @property
    def intake(self) -> DocumentIntakeService:
        return DocumentIntakeService(storage=self.storage, http_client=self.http_client)

    @property
    def analyzer(self) -> DocumentAnalyzer:
        return DocumentAnalyzer(text_extractor=self.text_extractor, llm=self.llm)

    @property
    def responder(self) -> ChatResponder:
        return ChatResponder(llm=self.llm)


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context
