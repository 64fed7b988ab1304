from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.sql import func
from .database import Base


class SharePointWebhook(Base):
    __tablename__ = "sharepoint_webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_external_id = Column(String, unique=True, index=True, nullable=False)  # Assigned by Microsoft Graph
    account_id = Column(String, index=True, nullable=False)  # Lookup into connect_sharepoint.account_id
    expiration_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<SharePointWebhook {self.webhook_external_id} account={self.account_id}>"


class SharePointConnection(Base):
    __tablename__ = "connect_sharepoint"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, unique=True, index=True, nullable=False)
    access_token = Column(Text, nullable=False)
    tenant_id = Column(String, nullable=False)  # Azure AD tenant used for the token exchange
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        # Never include the access token
        return f"<SharePointConnection account={self.account_id} tenant={self.tenant_id}>"
