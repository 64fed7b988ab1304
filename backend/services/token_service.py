import logging
from typing import Optional

import requests

from config import Settings

# Set up logging
logger = logging.getLogger(__name__)

TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"


class TokenRefresher:
    """Obtains app-only Microsoft Graph tokens with the client-credentials grant."""

    def __init__(self, settings: Settings):
        self.client_id = settings.client_id
        self.client_secret = settings.client_secret
        self.timeout = settings.token_request_timeout

    def refresh_access_token(self, tenant_id: str) -> Optional[str]:
        """Request a new access token for a tenant.

        Returns None instead of raising when the token endpoint cannot be
        reached, answers with anything but 200, or sends an unusable body.
        No retries happen here.
        """
        if not tenant_id:
            logger.warning("Cannot refresh access token without a tenant id")
            return None

        url = TOKEN_URL_TEMPLATE.format(tenant_id=tenant_id)
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": GRAPH_DEFAULT_SCOPE,
            "grant_type": "client_credentials",
        }

        try:
            response = requests.post(url, data=data, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Error refreshing access token for tenant {tenant_id}: {str(e)}")
            return None

        if response.status_code != 200:
            logger.error(f"Token request for tenant {tenant_id} failed with status {response.status_code}")
            logger.error(f"Response: {response.text[:300]}")
            return None

        try:
            token_data = response.json()
        except ValueError:
            logger.error(f"Token response for tenant {tenant_id} is not valid JSON")
            return None

        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not access_token or not isinstance(access_token, str):
            logger.error(f"Token response for tenant {tenant_id} is missing access_token")
            return None

        logger.info(f"Successfully obtained access token for tenant {tenant_id}")
        return access_token
