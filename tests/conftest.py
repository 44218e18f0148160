import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.config import settings  # noqa: E402
from app.database import Base  # noqa: E402
from app.models import ChatbotResponse, Company, WhatsAppInstance  # noqa: E402
from app.services.rate_limiter import webhook_rate_limiter  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_rate_limiter(monkeypatch):
    monkeypatch.setattr(settings, "redis_url", None)
    webhook_rate_limiter.memory.reset()
    yield
    webhook_rate_limiter.memory.reset()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def company(db):
    company = Company(name="Pizzaria Bella", phone="11987654321")
    db.add(company)
    db.commit()
    return company


@pytest.fixture
def instance(db, company):
    instance = WhatsAppInstance(
        instance_id="bella-main",
        company_id=company.id,
        name="Bella principal",
        status="connected",
        api_settings={},
        is_active=True,
    )
    db.add(instance)
    db.commit()
    return instance


@pytest.fixture
def make_rule(db, company):
    """Persist chatbot rules with increasing created_at so insertion order is the tie-break order."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    created = []

    def _make(keywords, response="ok", **overrides):
        values = {
            "company_id": company.id,
            "trigger_keywords": keywords,
            "response_message": response,
            "match_type": "contains",
            "priority": 1,
            "is_active": True,
            "created_at": base + timedelta(minutes=len(created)),
        }
        values.update(overrides)
        rule = ChatbotResponse(**values)
        db.add(rule)
        db.commit()
        created.append(rule)
        return rule

    return _make
