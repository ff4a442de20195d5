'''
Represent core ledger, cache, and synchronization types for Ledgerline.

Re-exports the caller-facing client and the components it is built from.
'''

from __future__ import annotations

from ledgerline.core.optimistic import OptimisticUpdateManager
from ledgerline.core.portfolio_client import PortfolioClient
from ledgerline.core.query_cache import QueryCache
from ledgerline.core.sync_manager import SyncManager, SyncReport

__all__ = ['OptimisticUpdateManager', 'PortfolioClient', 'QueryCache', 'SyncManager', 'SyncReport']
