"""
Shared fixtures: an in-memory SQLite database with the SharePoint tables,
a fixed clock and ready-made settings.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from models.database import Base, create_session_factory
from models.sharepoint import SharePointConnection, SharePointWebhook

NOW = datetime(2026, 10, 19, 4, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        client_id="test-client-id",
        client_secret="test-client-secret",
        token_request_timeout=5,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = create_session_factory(engine)()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def add_connection(db_session):
    def _add(account_id="a1", access_token="old", tenant_id="t1"):
        connection = SharePointConnection(account_id=account_id, access_token=access_token, tenant_id=tenant_id)
        db_session.add(connection)
        db_session.commit()
        return connection

    return _add


@pytest.fixture
def add_webhook(db_session):
    def _add(external_id="w1", account_id="a1", expires_in=timedelta(days=2), now=NOW):
        webhook = SharePointWebhook(
            webhook_external_id=external_id,
            account_id=account_id,
            expiration_date=now + expires_in,
        )
        db_session.add(webhook)
        db_session.commit()
        return webhook

    return _add
