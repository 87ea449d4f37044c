"""
Shared fixtures for Salesboard unit tests.

Every test gets a fresh in-memory SQLite database built from the ORM metadata.
The FastAPI app is exercised through TestClient with get_db and
get_session_factory overridden to point at that database; the app lifespan
(which targets PostgreSQL) is not started.

Sessions share one SQLite connection, so route tests seed and inspect data
through short-lived sessions that are closed before each request.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from salesboard.services.shared import models  # noqa: F401 - registers tables on Base
from salesboard.services.shared.database import Base, get_db, get_session_factory, make_engine
from salesboard.services.shared.models import (
    Dataset, DatasetField, EnrichmentRule, WebhookConnection,
)

ORG_ID = "org-1"


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    from salesboard.services.webhooks.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seed(session_factory):
    """
    Create a connection (plus dataset, fields and rules when given) and
    return {"connection_id", "dataset_id"}.

        seed(fields=[{"field_slug": "email", "json_path": "data.email"}],
             rules=[{"target_table": "leads", "match_field": "email", "target_field": "email"}],
             signature_type=SignatureType.hmac_sha256, signature_secret="s3cret")
    """
    def _seed(fields=(), rules=(), with_dataset=True, organization_id=ORG_ID, **connection_kwargs) -> dict:
        with session_factory() as s:
            dataset_id = None
            if with_dataset:
                dataset = Dataset(organization_id=organization_id, name="Inbound calls")
                s.add(dataset)
                s.flush()
                dataset_id = dataset.id
                for i, field_kwargs in enumerate(fields):
                    s.add(DatasetField(
                        dataset_id=dataset_id,
                        organization_id=organization_id,
                        sort_order=i,
                        **{"field_name": field_kwargs["field_slug"], **field_kwargs},
                    ))
                for rule_kwargs in rules:
                    s.add(EnrichmentRule(dataset_id=dataset_id, organization_id=organization_id, **rule_kwargs))

            connection = WebhookConnection(
                organization_id=organization_id,
                name=connection_kwargs.pop("name", "Test connection"),
                dataset_id=dataset_id,
                **connection_kwargs,
            )
            s.add(connection)
            s.flush()
            ids = {"connection_id": connection.id, "dataset_id": dataset_id}
            s.commit()
        return ids

    return _seed
