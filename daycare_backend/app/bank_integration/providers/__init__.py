"""
Upstream Clients

Bank bridge providers (read side) and the Firefly III ledger client (write side).
"""

from .base import BaseBankProvider
from .simplefin import SimplefinProvider
from .firefly import FireflyClient

__all__ = ['BaseBankProvider', 'SimplefinProvider', 'FireflyClient']
