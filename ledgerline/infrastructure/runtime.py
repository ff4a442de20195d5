'''
Process wiring for a Ledgerline client.

open_runtime() configures logging, opens the durable queue, the store
adapter, and the reachability probe, and assembles the cache, the
Optimistic Update Manager, the Sync Manager, and the PortfolioClient on
top of them. Everything it opened is closed in reverse order on exit.
'''

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

from ledgerline.core.optimistic import OptimisticUpdateManager
from ledgerline.core.portfolio_client import PortfolioClient
from ledgerline.core.query_cache import QueryCache
from ledgerline.core.retry import RetryPolicy
from ledgerline.core.sync_manager import SyncManager
from ledgerline.infrastructure.connectivity import ConnectivityMonitor, ReachabilityProbe
from ledgerline.infrastructure.http_store import HttpPositionStore
from ledgerline.infrastructure.observability import configure_logging, get_logger
from ledgerline.infrastructure.operation_queue import SqliteOperationQueue
from ledgerline.infrastructure.position_store import PositionStore
from ledgerline.infrastructure.push_channel import PushChannel
from ledgerline.infrastructure.settings import Settings, get_settings

__all__ = ['Runtime', 'open_runtime']


@dataclass(frozen=True)
class Runtime:

    '''
    Assembled components of a running client.

    Args:
        settings (Settings): Configuration the runtime was built from.
        client (PortfolioClient): Caller-facing facade.
        cache (QueryCache): Shared cache.
        optimistic (OptimisticUpdateManager): Optimistic mutation manager.
        sync (SyncManager): Push, offline queue, and replay coordinator.
        connectivity (ConnectivityMonitor): Online/offline signal.
        store (PositionStore): Position Store adapter.
        queue (SqliteOperationQueue): Durable queue.
    '''

    settings: Settings
    client: PortfolioClient
    cache: QueryCache
    optimistic: OptimisticUpdateManager
    sync: SyncManager
    connectivity: ConnectivityMonitor
    store: PositionStore
    queue: SqliteOperationQueue


@asynccontextmanager
async def open_runtime(
    settings: Settings | None = None,
    *,
    store: PositionStore | None = None,
    push_channel: PushChannel | None = None,
    probe: bool = True,
) -> AsyncIterator[Runtime]:

    '''
    Build and start a client, closing every resource on exit.

    Args:
        settings (Settings | None): Configuration, defaults to get_settings()
        store (PositionStore | None): Store adapter, defaults to an HttpPositionStore on settings.store_base_url
        push_channel (PushChannel | None): Source of remote changes
        probe (bool): Drive connectivity from the health URL when True

    Returns:
        AsyncIterator[Runtime]: Started runtime
    '''

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    async with AsyncExitStack() as stack:
        queue = await SqliteOperationQueue.open(settings.queue_path)
        stack.push_async_callback(queue.close)

        if store is None:
            http_store = HttpPositionStore(settings.store_base_url, timeout=settings.store_timeout_s)
            stack.push_async_callback(http_store.close)
            store = http_store

        connectivity = ConnectivityMonitor()
        if probe:
            reachability = ReachabilityProbe(
                connectivity,
                settings.resolved_health_url(),
                interval=settings.probe_interval_s,
            )
            await reachability.check()
            reachability.start()
            stack.push_async_callback(reachability.close)

        cache = QueryCache.from_settings(settings)
        stack.push_async_callback(cache.close)

        optimistic = OptimisticUpdateManager(cache, store)
        sync = SyncManager(
            optimistic,
            store,
            queue,
            connectivity,
            push_channel,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay_s,
                max_delay=settings.retry_max_delay_s,
            ),
            background_refresh=settings.background_refresh_s,
        )
        await sync.start()
        stack.push_async_callback(sync.close)

        client = PortfolioClient(cache, store, sync)
        log.info(
            'runtime_started',
            queue_path=settings.queue_path,
            online=connectivity.is_online,
            pending=sync.pending_count,
        )

        yield Runtime(
            settings=settings,
            client=client,
            cache=cache,
            optimistic=optimistic,
            sync=sync,
            connectivity=connectivity,
            store=store,
            queue=queue,
        )

        log.info('runtime_stopping', pending=sync.pending_count)
