"""
Bank Integration Module

Syncs business card transactions from SimpleFIN Bridge into Firefly III.
"""

from .service import SyncService
from .encryption import TokenEncryption
from .deduplication import TransactionDeduplicator

__all__ = ['SyncService', 'TokenEncryption', 'TransactionDeduplicator']
