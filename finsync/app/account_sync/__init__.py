"""
Account Sync Module

Pulls accounts and transactions from aggregator APIs and scraped bank
websites into one normalized, deduplicated, status-tracked store.
"""

from .service import SyncOrchestrator, SyncResult
from .encryption import CredentialVault
from .deduplication import TransactionDeduplicator
from .status import SyncStateMachine
from .sweep import StalenessSweep, SweepReport

__all__ = [
    'SyncOrchestrator', 'SyncResult', 'CredentialVault', 'TransactionDeduplicator',
    'SyncStateMachine', 'StalenessSweep', 'SweepReport'
]
