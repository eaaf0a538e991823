"""
Abstract base class for bank bridge providers

Defines the interface the sync orchestrator and the connection routes use
to talk to a read-only bank data bridge.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Tuple, Union
from datetime import date, datetime

StartDate = Union[int, date, datetime, None]


class BaseBankProvider(ABC):
    """
    Abstract base class for bank bridge providers.

    Implementations raise the typed errors from ``bank_integration.errors``;
    they never return partial results on failure.
    """

    @abstractmethod
    async def claim_setup_token(self, setup_token: str) -> str:
        """
        Exchange a one-time setup token for a durable access URL.

        Args:
            setup_token: Token pasted by the user

        Returns:
            Access URL with embedded credentials

        Raises:
            InvalidToken: If the token cannot be decoded or claimed
        """
        pass

    @abstractmethod
    async def fetch_accounts(self, access_url: str) -> List[Dict[str, Any]]:
        """
        Fetch the accounts visible through an access URL.

        Returns:
            List of raw account dictionaries (each has at least ``id``)
        """
        pass

    @abstractmethod
    async def fetch_account(
        self,
        access_url: str,
        account_id: str,
        start_date: StartDate = None
    ) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Fetch one account and its transactions since ``start_date``.

        Returns:
            (account, transactions). ``account`` is None and transactions is
            empty when the bridge omits the account from its response.
        """
        pass

    async def fetch_transactions(
        self,
        access_url: str,
        account_id: str,
        start_date: StartDate = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch transactions for a single account since ``start_date``.

        Returns:
            List of raw transaction dictionaries (empty if the account is absent)
        """
        _, transactions = await self.fetch_account(access_url, account_id, start_date)
        return transactions

    async def aclose(self) -> None:
        """Release any pooled HTTP resources."""
        return None
