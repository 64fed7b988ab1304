"""
End-to-end tests for the pass entry point, the init_db command and the
Celery task, against a file-backed SQLite database.
"""
import importlib
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from config import Settings
from models.database import Base, create_db_engine, create_session_factory
from models.sharepoint import SharePointConnection, SharePointWebhook
from services.renewal_service import RenewalSummary, as_utc, run_renewal_pass


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'renewal.db'}"


@pytest.fixture
def file_settings(database_url):
    return Settings(database_url=database_url, client_id="client-id", client_secret="client-secret")


@pytest.fixture
def seeded(database_url):
    """Create the tables with one due and one current webhook."""
    engine = create_db_engine(database_url)
    Base.metadata.create_all(engine)
    now = datetime.now(timezone.utc)
    session = create_session_factory(engine)()
    session.add_all([
        SharePointConnection(account_id="a1", access_token="old", tenant_id="t1"),
        SharePointWebhook(webhook_external_id="w1", account_id="a1", expiration_date=now + timedelta(days=2)),
        SharePointWebhook(webhook_external_id="w2", account_id="a1", expiration_date=now + timedelta(days=10)),
    ])
    session.commit()
    session.close()
    yield engine
    engine.dispose()


def read_state(engine):
    session = create_session_factory(engine)()
    try:
        token = session.query(SharePointConnection).filter_by(account_id="a1").one().access_token
        expirations = {
            webhook.webhook_external_id: as_utc(webhook.expiration_date)
            for webhook in session.query(SharePointWebhook).all()
        }
        return token, expirations
    finally:
        session.close()


def token_response(token="new-token"):
    response = Mock(status_code=200, text="")
    response.json.return_value = {"access_token": token, "token_type": "Bearer", "expires_in": 3599}
    return response


@patch("services.token_service.requests.post")
def test_run_renewal_pass_updates_due_webhook(mock_post, seeded, file_settings):
    mock_post.return_value = token_response()
    _, before_expirations = read_state(seeded)
    before = datetime.now(timezone.utc)

    summary = run_renewal_pass(file_settings)

    after = datetime.now(timezone.utc)
    token, expirations = read_state(seeded)
    assert token == "new-token"
    assert before + timedelta(days=30) <= expirations["w1"] <= after + timedelta(days=30)
    assert expirations["w2"] == before_expirations["w2"]
    assert summary.as_dict()["renewed"] == 1
    assert summary.as_dict()["not_due"] == 1
    mock_post.assert_called_once()


@patch("services.token_service.requests.post")
def test_run_renewal_pass_with_rejected_credentials(mock_post, seeded, file_settings):
    mock_post.return_value = Mock(status_code=401, text='{"error": "invalid_client"}')
    before = read_state(seeded)

    summary = run_renewal_pass(file_settings)

    assert read_state(seeded) == before
    assert summary.as_dict()["refresh_failed"] == 1


def test_run_renewal_pass_without_tables_is_fatal(file_settings):
    with pytest.raises(OperationalError):
        run_renewal_pass(file_settings)


def test_run_renewal_pass_unreachable_database_is_fatal(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'missing-dir' / 'renewal.db'}",
        client_id="client-id",
        client_secret="client-secret",
    )

    with pytest.raises(OperationalError):
        run_renewal_pass(settings)


@pytest.mark.parametrize("fails", [False, True])
def test_run_renewal_pass_closes_session(seeded, file_settings, fails):
    session = Mock()
    session_factory = Mock(return_value=session)
    if fails:
        session.query.side_effect = OperationalError("SELECT", {}, Exception("server closed the connection"))
    else:
        session.query.return_value.order_by.return_value.all.return_value = []

    with patch("services.renewal_service.create_session_factory", return_value=session_factory):
        if fails:
            with pytest.raises(OperationalError):
                run_renewal_pass(file_settings)
        else:
            run_renewal_pass(file_settings)

    session.close.assert_called_once()


class TestInitDb:

    @pytest.fixture(autouse=True)
    def env(self, monkeypatch, database_url):
        monkeypatch.setenv("DATABASE_URL", database_url)
        monkeypatch.setenv("SHAREPOINT_CLIENT_ID", "client-id")
        monkeypatch.setenv("SHAREPOINT_CLIENT_SECRET", "client-secret")

    def test_creates_tables(self, database_url):
        import init_db
        from sqlalchemy import inspect

        assert init_db.main([]) == 0

        engine = create_db_engine(database_url)
        try:
            assert {"sharepoint_webhooks", "connect_sharepoint"} <= set(inspect(engine).get_table_names())
        finally:
            engine.dispose()

    @patch("services.token_service.requests.post")
    def test_renew_now_runs_a_pass(self, mock_post, seeded):
        import init_db

        mock_post.return_value = token_response()

        assert init_db.main(["--renew-now"]) == 0
        assert read_state(seeded)[0] == "new-token"

    @patch("services.token_service.requests.post")
    def test_renew_now_reports_failures(self, mock_post, seeded):
        import init_db

        mock_post.return_value = Mock(status_code=500, text="")

        assert init_db.main(["--renew-now"]) == 1


class TestCeleryWorker:

    @pytest.fixture
    def worker(self, monkeypatch, database_url):
        monkeypatch.setenv("DATABASE_URL", database_url)
        monkeypatch.setenv("SHAREPOINT_CLIENT_ID", "client-id")
        monkeypatch.setenv("SHAREPOINT_CLIENT_SECRET", "client-secret")
        monkeypatch.setenv("RENEWAL_PASS_TIME_LIMIT", "900")
        sys.modules.pop("celery_worker", None)
        module = importlib.import_module("celery_worker")
        yield module
        sys.modules.pop("celery_worker", None)

    def test_daily_schedule_at_four(self, worker):
        entry = worker.app.conf.beat_schedule["renew-sharepoint-webhooks-daily"]

        assert entry["task"] == "celery_worker.renew_sharepoint_webhooks"
        assert entry["schedule"].hour == {4}
        assert entry["schedule"].minute == {0}

    def test_missing_configuration_stops_import(self, monkeypatch):
        from config import ConfigError

        monkeypatch.delenv("DATABASE_URL", raising=False)
        for name in ("DB_USER", "DB_PASSWORD", "DB_NAME", "DB_HOST",
                     "SHAREPOINT_CLIENT_ID", "SHAREPOINT_CLIENT_SECRET"):
            monkeypatch.delenv(name, raising=False)
        sys.modules.pop("celery_worker", None)

        with patch("config.load_dotenv"), pytest.raises(ConfigError):
            importlib.import_module("celery_worker")
        sys.modules.pop("celery_worker", None)

    def test_task_runs_pass_with_deadline(self, worker):
        summary = RenewalSummary(start_time=datetime.now(timezone.utc), end_time=datetime.now(timezone.utc))

        with patch("services.renewal_service.run_renewal_pass", return_value=summary) as run_pass:
            result = worker.renew_sharepoint_webhooks()

        settings_arg = run_pass.call_args.args[0]
        deadline = run_pass.call_args.kwargs["deadline"]
        assert settings_arg is worker.settings
        assert timedelta(minutes=14) < deadline - datetime.now(timezone.utc) <= timedelta(minutes=15)
        assert result["renewed"] == 0
        assert result["total_webhooks"] == 0

    def test_task_reraises_fatal_errors(self, worker):
        error = OperationalError("SELECT", {}, Exception("could not connect"))

        with patch("services.renewal_service.run_renewal_pass", side_effect=error):
            with pytest.raises(OperationalError):
                worker.renew_sharepoint_webhooks()
