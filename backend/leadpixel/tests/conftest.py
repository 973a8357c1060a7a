"""Pytest configuration for leadpixel integration tests

WHAT: Provides a per-test SQLite database, the FastAPI app wired to it, and pixel fixtures
WHY: The visitor upsert runs real INSERT ... ON CONFLICT statements, so tests need a real database
REFERENCES:
    - leadpixel/main.py: FastAPI application
    - leadpixel/database.py: get_db dependency
    - leadpixel/workers/arq_enqueue.py: get_enrichment_dispatcher dependency
"""

import os
import uuid
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Set test environment before leadpixel.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)
os.environ.pop("WEBHOOK_API_KEY", None)

from leadpixel.database import Base, get_db  # noqa: E402
from leadpixel.deps import get_settings  # noqa: E402
from leadpixel.models import ApiCredential, AppSetting, Pixel, PixelStatusEnum, Visitor  # noqa: E402
from leadpixel.workers.arq_enqueue import get_enrichment_dispatcher  # noqa: E402

WEBHOOK_KEY = "test-webhook-key"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """File-backed SQLite so app sessions and test sessions share committed state."""
    db_file = tmp_path / "leadpixel_test.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

class RecordingDispatcher:
    """Stands in for the arq-backed dispatcher; records enqueued visitor pks."""

    def __init__(self):
        self.dispatched: List[uuid.UUID] = []

    async def dispatch(self, visitor_pk: uuid.UUID) -> None:
        self.dispatched.append(visitor_pk)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def app(session_factory, dispatcher):
    """Create FastAPI test application."""
    from leadpixel.main import create_app

    test_app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_enrichment_dispatcher] = lambda: dispatcher

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Model Fixtures
# ============================================================================

def create_pixel(
    db: Session,
    pixel_code: str = "px_test123",
    status: PixelStatusEnum = PixelStatusEnum.active,
    owner_id: uuid.UUID = None,
    visitors_api_url: str = None,
) -> Pixel:
    pixel = Pixel(
        owner_id=owner_id or uuid.uuid4(),
        name=f"Site {pixel_code}",
        domain="example.com",
        pixel_code=pixel_code,
        status=status,
        visitors_api_url=visitors_api_url,
    )
    db.add(pixel)
    db.commit()
    db.refresh(pixel)
    return pixel


def fetch_visitor(db: Session, pixel_id: uuid.UUID, visitor_id: str) -> Visitor:
    """Read the visitor as committed by another session."""
    db.expire_all()
    return (
        db.query(Visitor)
        .filter(Visitor.pixel_id == pixel_id, Visitor.visitor_id == visitor_id)
        .one()
    )


@pytest.fixture
def pixel(test_db_session) -> Pixel:
    return create_pixel(test_db_session)


@pytest.fixture
def webhook_key(test_db_session) -> str:
    test_db_session.add(AppSetting(key="webhook_api_key", value=WEBHOOK_KEY))
    test_db_session.commit()
    return WEBHOOK_KEY


@pytest.fixture
def credential(test_db_session, pixel) -> ApiCredential:
    cred = ApiCredential(owner_id=pixel.owner_id, api_key="owner-enrich-key")
    test_db_session.add(cred)
    test_db_session.commit()
    return cred


@pytest.fixture
def make_pixel(test_db_session):
    def _make(**kwargs) -> Pixel:
        return create_pixel(test_db_session, **kwargs)
    return _make


@pytest.fixture
def get_visitor(test_db_session):
    def _get(pixel_id: uuid.UUID, visitor_id: str) -> Visitor:
        return fetch_visitor(test_db_session, pixel_id, visitor_id)
    return _get
