import os
import tempfile
from collections.abc import Generator
from pathlib import Path

# Point the app at throwaway storage before any app module reads settings.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="residency-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'test.db'}"
os.environ["STORAGE_ROOT"] = str(_TEST_ROOT / "storage")
os.environ["FIRST_AGENCY_PASSWORD"] = "agency-test-password"
os.environ["RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["RETRY_MAX_DELAY_SECONDS"] = "0"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel, delete  # noqa: E402

from app.core.config import settings  # noqa: E402
from app.core.context import ServiceContext, get_context  # noqa: E402
from app.core.db import engine, init_db  # noqa: E402
from app.core.events import ChangeFeed  # noqa: E402
from app.main import app  # noqa: E402
from app.models import (  # noqa: E402
    ChatConversation,
    ChatMessage,
    ChatParticipant,
    Document,
    ResidencyProgress,
    ResidencyStepProgress,
    User,
    UserProfile,
)
from app.services.llm import LLMClient  # noqa: E402
from app.services.ocr import VisionTextExtractor  # noqa: E402
from app.services.storage import LocalFileStorage  # noqa: E402
from tests.utils.fakes import FakeServices  # noqa: E402
from tests.utils.user import authentication_token_from_email  # noqa: E402
from tests.utils.utils import get_agency_token_headers  # noqa: E402


@pytest.fixture(scope="session")
def db() -> Generator[Session, None, None]:
    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        init_db(session)
        yield session
        for model in (
            ChatMessage,
            ChatParticipant,
            ChatConversation,
            ResidencyStepProgress,
            ResidencyProgress,
            Document,
            UserProfile,
            User,
        ):
            session.execute(delete(model))
        session.commit()


@pytest.fixture(scope="session")
def storage() -> LocalFileStorage:
    return LocalFileStorage(
        settings.STORAGE_ROOT,
        bucket=settings.STORAGE_BUCKET,
        public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
    )


@pytest.fixture(scope="session")
def fake_services(storage: LocalFileStorage) -> FakeServices:
    return FakeServices(storage)


@pytest.fixture(autouse=True)
def reset_fake_services(fake_services: FakeServices) -> None:
    fake_services.reset()


@pytest.fixture(scope="session")
def http_client(fake_services: FakeServices) -> Generator[httpx.Client, None, None]:
    with httpx.Client(transport=httpx.MockTransport(fake_services.handler)) as c:
        yield c


@pytest.fixture(scope="session")
def service_context(
    storage: LocalFileStorage, http_client: httpx.Client
) -> ServiceContext:
    return ServiceContext(
        storage=storage,
        text_extractor=VisionTextExtractor(
            api_key="test-vision-key",
            base_url=settings.VISION_BASE_URL,
            http_client=http_client,
        ),
        llm=LLMClient(
            api_key="test-llm-key",
            base_url=settings.LLM_BASE_URL,
            model="test-model",
            http_client=http_client,
        ),
        change_feed=ChangeFeed(),
        http_client=http_client,
    )


@pytest.fixture(scope="module")
def client(
    db: Session, service_context: ServiceContext
) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_context] = lambda: service_context
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_context, None)


@pytest.fixture(scope="module")
def agency_token_headers(client: TestClient) -> dict[str, str]:
    return get_agency_token_headers(client)


@pytest.fixture(scope="module")
def customer_token_headers(client: TestClient, db: Session) -> dict[str, str]:
    return authentication_token_from_email(
        client=client, email=settings.EMAIL_TEST_USER, db=db
    )
