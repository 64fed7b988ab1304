"""
Daily renewal pass for SharePoint webhooks.

Finds webhooks that expire within RENEWAL_THRESHOLD_DAYS, refreshes the
account's access token and pushes the webhook expiration RENEWAL_WINDOW_DAYS
into the future. Records are processed one at a time and a failure on one
record never stops the others.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings
from models.database import RecordNotFoundError, create_db_engine, create_session_factory, get_db_session
from services.credential_store import CredentialStore
from services.token_service import TokenRefresher
from services.webhook_registry import WebhookRegistry

# Set up logging
logger = logging.getLogger(__name__)

RENEWAL_THRESHOLD_DAYS = 3
RENEWAL_WINDOW_DAYS = 30

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RenewalOutcome(str, Enum):
    SKIPPED_NOT_DUE = "skipped_not_due"
    SKIPPED_NO_CREDENTIAL = "skipped_no_credential"
    RENEWED = "renewed"
    REFRESH_FAILED = "refresh_failed"
    PERSIST_FAILED = "persist_failed"
    FAILED = "failed"


FAILED_OUTCOMES = (RenewalOutcome.REFRESH_FAILED, RenewalOutcome.PERSIST_FAILED, RenewalOutcome.FAILED)


@dataclass(frozen=True)
class PendingWebhook:
    """Column values copied out of a fetched row, so later commits cannot expire them."""
    webhook_external_id: str
    account_id: str
    expiration_date: datetime


@dataclass
class RecordResult:
    webhook_external_id: str
    account_id: str
    outcome: RenewalOutcome
    error: Optional[str] = None


@dataclass
class RenewalSummary:
    start_time: datetime
    end_time: Optional[datetime] = None
    total_webhooks: int = 0
    not_started: int = 0
    cancelled: bool = False
    results: List[RecordResult] = field(default_factory=list)

    def count(self, outcome: RenewalOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if result.outcome in FAILED_OUTCOMES)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def as_dict(self) -> Dict[str, Any]:
        """JSON-serialisable view, used as the Celery task result."""
        return {
            "total_webhooks": self.total_webhooks,
            "renewed": self.count(RenewalOutcome.RENEWED),
            "not_due": self.count(RenewalOutcome.SKIPPED_NOT_DUE),
            "no_credential": self.count(RenewalOutcome.SKIPPED_NO_CREDENTIAL),
            "refresh_failed": self.count(RenewalOutcome.REFRESH_FAILED),
            "persist_failed": self.count(RenewalOutcome.PERSIST_FAILED),
            "failed": self.count(RenewalOutcome.FAILED),
            "not_started": self.not_started,
            "cancelled": self.cancelled,
            "errors": [
                {
                    "webhook_external_id": result.webhook_external_id,
                    "account_id": result.account_id,
                    "outcome": result.outcome.value,
                    "error": result.error,
                }
                for result in self.results
                if result.outcome in FAILED_OUTCOMES
            ],
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
        }


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (e.g. from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_until_expiry(expiration_date: datetime, now: datetime) -> int:
    """Whole days between now and expiration, floored (negative once expired)."""
    return (as_utc(expiration_date) - as_utc(now)) // timedelta(days=1)


def is_due(days_left: int) -> bool:
    return days_left <= RENEWAL_THRESHOLD_DAYS


class RenewalService:
    """Runs one renewal pass over every registered webhook."""

    def __init__(
        self,
        webhooks: WebhookRegistry,
        credentials: CredentialStore,
        refresher: TokenRefresher,
        clock: Clock = utc_now,
    ):
        self.webhooks = webhooks
        self.credentials = credentials
        self.refresher = refresher
        self.clock = clock

    def _should_stop(self, deadline: Optional[datetime], stop_event: Optional[threading.Event]) -> bool:
        if stop_event is not None and stop_event.is_set():
            return True
        return deadline is not None and self.clock() >= as_utc(deadline)

    def run_renewal_pass(
        self,
        deadline: Optional[datetime] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> RenewalSummary:
        """Process every webhook once.

        Failing to fetch the webhook list propagates to the caller. Anything
        that goes wrong for a single webhook is logged and recorded in the
        summary. Once the deadline passes or stop_event is set, no further
        webhook is started; the one in progress finishes its writes.
        """
        summary = RenewalSummary(start_time=self.clock())
        logger.info("Starting SharePoint webhook renewal pass")

        webhooks = [
            PendingWebhook(webhook.webhook_external_id, webhook.account_id, webhook.expiration_date)
            for webhook in self.webhooks.fetch_all_webhooks()
        ]
        summary.total_webhooks = len(webhooks)
        logger.info(f"Found {len(webhooks)} webhook(s)")

        for index, webhook in enumerate(webhooks):
            if self._should_stop(deadline, stop_event):
                summary.cancelled = True
                summary.not_started = len(webhooks) - index
                logger.warning(f"Renewal pass stopped early, {summary.not_started} webhook(s) not processed")
                break

            summary.results.append(self.process_webhook(webhook))

        summary.end_time = self.clock()
        self._log_summary(summary)
        return summary

    def process_webhook(self, webhook: PendingWebhook) -> RecordResult:
        """Evaluate and, when due, renew a single webhook."""
        external_id = webhook.webhook_external_id
        account_id = webhook.account_id

        def result(outcome: RenewalOutcome, error: Optional[str] = None) -> RecordResult:
            return RecordResult(external_id, account_id, outcome, error)

        try:
            connection = self.credentials.fetch_credential(account_id)
            if connection is None:
                logger.warning(f"No SharePoint connection for account {account_id}, skipping webhook {external_id}")
                return result(RenewalOutcome.SKIPPED_NO_CREDENTIAL)

            days_left = days_until_expiry(webhook.expiration_date, self.clock())
            if not is_due(days_left):
                logger.info(f"Webhook {external_id} expires in {days_left} day(s), not due for renewal")
                return result(RenewalOutcome.SKIPPED_NOT_DUE)

            logger.info(f"Webhook {external_id} expires in {days_left} day(s), renewing")
            access_token = self.refresher.refresh_access_token(connection.tenant_id)
            if not access_token:
                logger.warning(f"Failed to refresh access token for account {account_id}, webhook {external_id} not renewed")
                return result(RenewalOutcome.REFRESH_FAILED, "Token endpoint returned no access token")

            # Token first: a fresh token with an old expiration is safe to retry tomorrow
            self.credentials.update_access_token(account_id, access_token)

            new_expiration = self.clock() + timedelta(days=RENEWAL_WINDOW_DAYS)
            self.webhooks.update_expiration(external_id, new_expiration)

            logger.info(f"Renewed webhook {external_id} for account {account_id} until {new_expiration.isoformat()}")
            return result(RenewalOutcome.RENEWED)

        except (SQLAlchemyError, RecordNotFoundError) as e:
            logger.error(f"Storage error renewing webhook {external_id} for account {account_id}: {e}", exc_info=True)
            return result(RenewalOutcome.PERSIST_FAILED, str(e))
        except Exception as e:
            self.webhooks.rollback()
            logger.error(f"Unexpected error renewing webhook {external_id} for account {account_id}: {e}", exc_info=True)
            return result(RenewalOutcome.FAILED, str(e))

    def _log_summary(self, summary: RenewalSummary) -> None:
        counts = summary.as_dict()
        message = (
            f"{counts['renewed']} renewed, {counts['not_due']} not due, "
            f"{counts['no_credential']} without credentials, {counts['refresh_failed']} refresh failed, "
            f"{counts['failed']} failed unexpectedly, "
            f"{counts['persist_failed']} persist failed ({summary.duration_seconds:.1f}s)"
        )
        if summary.failed or summary.cancelled:
            logger.warning(f"Webhook renewal pass completed with problems: {message}")
        else:
            logger.info(f"Webhook renewal pass completed: {message}")


def build_renewal_service(db: Session, settings: Settings, clock: Clock = utc_now) -> RenewalService:
    return RenewalService(
        webhooks=WebhookRegistry(db),
        credentials=CredentialStore(db),
        refresher=TokenRefresher(settings),
        clock=clock,
    )


def run_renewal_pass(
    settings: Settings,
    deadline: Optional[datetime] = None,
    stop_event: Optional[threading.Event] = None,
) -> RenewalSummary:
    """Open one database session, run a full pass and release the session.

    Connection errors and a failed webhook fetch propagate to the caller.
    """
    engine = create_db_engine(settings.database_url)
    try:
        session_factory = create_session_factory(engine)
        with get_db_session(session_factory) as db:
            service = build_renewal_service(db, settings)
            return service.run_renewal_pass(deadline=deadline, stop_event=stop_event)
    finally:
        engine.dispose()
