import logging
from datetime import datetime
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.database import RecordNotFoundError
from models.sharepoint import SharePointWebhook

# Set up logging
logger = logging.getLogger(__name__)


class WebhookRegistry:
    """Read/write access to the sharepoint_webhooks table."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_all_webhooks(self) -> List[SharePointWebhook]:
        """Get every registered webhook."""
        return self.db.query(SharePointWebhook).order_by(SharePointWebhook.id).all()

    def update_expiration(self, webhook_external_id: str, expiration_date: datetime) -> None:
        """Overwrite a webhook's expiration date and commit."""
        try:
            updated = self.db.query(SharePointWebhook).filter(
                SharePointWebhook.webhook_external_id == webhook_external_id
            ).update({SharePointWebhook.expiration_date: expiration_date}, synchronize_session="fetch")

            if not updated:
                self.db.rollback()
                raise RecordNotFoundError(f"No webhook with external id {webhook_external_id}")

            self.db.commit()
            logger.debug(f"Webhook {webhook_external_id} now expires {expiration_date.isoformat()}")

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error updating expiration for webhook {webhook_external_id}: {str(e)}")
            raise

    def rollback(self) -> None:
        """Discard uncommitted work so the shared session can serve the next webhook."""
        try:
            self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Database error rolling back session: {str(e)}")
