import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.database import RecordNotFoundError
from models.sharepoint import SharePointConnection

# Set up logging
logger = logging.getLogger(__name__)


class CredentialStore:
    """Read/write access to the connect_sharepoint table."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_credential(self, account_id: str) -> Optional[SharePointConnection]:
        """Get the SharePoint connection for an account, or None."""
        try:
            return self.db.query(SharePointConnection).filter(
                SharePointConnection.account_id == account_id
            ).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error fetching SharePoint connection for account {account_id}: {str(e)}")
            raise

    def update_access_token(self, account_id: str, access_token: str) -> None:
        """Overwrite the stored access token for an account and commit."""
        try:
            updated = self.db.query(SharePointConnection).filter(
                SharePointConnection.account_id == account_id
            ).update({SharePointConnection.access_token: access_token}, synchronize_session="fetch")

            if not updated:
                self.db.rollback()
                raise RecordNotFoundError(f"No SharePoint connection for account {account_id}")

            self.db.commit()
            logger.debug(f"Stored new access token for account {account_id}")

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error updating access token for account {account_id}: {str(e)}")
            raise
