"""
Upstream client container

The encryption object, both HTTP clients and the sync timezone are built
once when the application starts, kept on ``app.state.sync_clients``
and handed to routes through ``get_sync_clients``.
"""

import logging
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from fastapi import HTTPException, Request, status

from .encryption import TokenEncryption
from .providers.base import BaseBankProvider
from .providers.firefly import FireflyClient
from .providers.simplefin import SimplefinProvider
from .timezones import UTC, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass
class SyncClients:
    encryption: TokenEncryption
    bridge: BaseBankProvider
    ledger: FireflyClient
    timezone: ZoneInfo = UTC

    @classmethod
    def from_settings(cls, settings) -> "SyncClients":
        """
        Build all clients from settings.

        Raises:
            ConfigurationError: Bad encryption key or missing Firefly token
        """
        encryption = TokenEncryption(settings.encryption_key)
        ledger = FireflyClient(
            base_url=settings.firefly_base_url,
            token=settings.firefly_service_pat,
            timeout=settings.firefly_timeout_seconds,
            expense_account_name=settings.firefly_expense_account_name,
            revenue_account_name=settings.firefly_revenue_account_name
        )
        bridge = SimplefinProvider(
            timeout=settings.simplefin_timeout_seconds,
            user_agent=settings.simplefin_user_agent
        )
        return cls(
            encryption=encryption,
            bridge=bridge,
            ledger=ledger,
            timezone=resolve_timezone(settings.sync_timezone)
        )

    async def aclose(self) -> None:
        await self.bridge.aclose()
        await self.ledger.aclose()
        logger.info("Upstream clients closed")


def get_sync_clients(request: Request) -> SyncClients:
    clients = getattr(request.app.state, "sync_clients", None)
    if clients is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Business expense sync is not configured"
        )
    return clients
