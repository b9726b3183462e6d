"""Linnworks session management.

A session token is valid on one Linnworks server for a limited time. The
stored connection row is the only cache: the token is reused until it is
within a few minutes of expiry, then exchanged for a new one.
"""

import logging
from datetime import datetime
from typing import Optional

from .config import Settings
from .constants import SESSION_EXPIRY_BUFFER_MINUTES
from .database import Database
from .linnworks_client import AuthenticationError, LinnworksAPIError, LinnworksClient
from .models import SessionToken, utc_now

logger = logging.getLogger(__name__)


class SessionManager:
    """Hands out valid Linnworks sessions per account."""

    def __init__(self, settings: Settings, database: Database, client: LinnworksClient):
        """Initialize session manager.

        Args:
            settings: Application settings (session TTL)
            database: Database holding the connection rows
            client: Linnworks client used for the authorization exchange
        """
        self.settings = settings
        self.db = database
        self.client = client

    async def get_valid_token(
        self,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> SessionToken:
        """Get a session for the account, re-authorizing when needed.

        Args:
            account_id: Local account identifier

        Returns:
            SessionToken valid for at least the expiry buffer

        Raises:
            AuthenticationError: If there is no usable connection or the
                authorization exchange fails
        """
        now = now or utc_now()
        connection = self.db.get_connection(account_id)
        if connection is None:
            raise AuthenticationError(f"No Linnworks connection for account {account_id}")
        if not connection.is_active:
            raise AuthenticationError(f"Linnworks connection for account {account_id} is inactive")

        stored = connection.session
        if stored and not stored.is_expiring_soon(SESSION_EXPIRY_BUFFER_MINUTES, now=now):
            logger.debug(f"Reusing Linnworks session for account {account_id}")
            return stored

        if not (
            connection.application_id
            and connection.application_secret
            and connection.installation_token
        ):
            self.db.set_connection_status(account_id, "error")
            raise AuthenticationError(f"Linnworks credentials missing for account {account_id}")

        logger.info(f"Authorizing Linnworks session for account {account_id}")
        try:
            response = await self.client.authorize_by_application(
                connection.application_id,
                connection.application_secret,
                connection.installation_token,
            )
            session = SessionToken.from_auth_response(
                response,
                ttl_minutes=self.settings.session_ttl_minutes,
                now=now,
            )
        except (LinnworksAPIError, ValueError) as e:
            self.db.set_connection_status(account_id, "error")
            raise AuthenticationError(f"Linnworks authorization failed: {e}") from e

        self.db.save_session(account_id, session)
        logger.info(
            f"Linnworks session obtained on {session.server}, "
            f"expires {session.expires_at.isoformat()}"
        )
        return session
