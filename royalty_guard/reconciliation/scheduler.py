"""
Retry-supervised scheduler: drives the engine forever.

Collections are reconciled one at a time (bounded load on rate-limited APIs);
when all are done the pass starts again. An exception escaping a pass is
logged and the pass restarts immediately: crash-and-restart supervision, no
backoff. The process never exits because of a reconciliation failure.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field

from royalty_guard.config.settings import Settings
from royalty_guard.database.database import SaleStore
from royalty_guard.guard_logging import get_logger
from royalty_guard.reconciliation.engine import CollectionResult, ReconciliationEngine

logger = get_logger(__name__)

IDLE_PASS_SLEEP_SEC = 1.0


@dataclass
class SchedulerState:
    """Counters for heartbeat logs and tests."""

    passes_completed: int = 0
    passes_crashed: int = 0
    last_error: str | None = None
    last_results: list[CollectionResult] = field(default_factory=list)


class ReconciliationScheduler:
    """
    Runs reconciliation passes over all active collections.

    pass_interval_sec: pause between completed passes (0 = back-to-back).
    max_passes: stop after this many pass attempts (None = forever).
    idle_sleep_sec: pause after a pass that found no active collections,
    when pass_interval_sec is 0.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        store: SaleStore,
        *,
        pass_interval_sec: float = 0.0,
        max_passes: int | None = None,
        idle_sleep_sec: float = IDLE_PASS_SLEEP_SEC,
    ) -> None:
        self._engine = engine
        self._store = store
        self._pass_interval_sec = max(0.0, pass_interval_sec)
        self._max_passes = max_passes
        self._idle_sleep_sec = max(0.0, idle_sleep_sec)
        self.state = SchedulerState()

    async def run_pass(self) -> list[CollectionResult]:
        """Reconcile every active collection sequentially."""
        collections = await asyncio.to_thread(self._store.get_collections, active_only=True)
        results: list[CollectionResult] = []
        for collection in collections:
            results.append(await self._engine.reconcile_collection(collection))
        logger.info(
            "scheduler_pass_done",
            collections=len(collections),
            failed=sum(1 for r in results if not r.succeeded),
            persisted=sum(r.persisted for r in results),
        )
        return results

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> SchedulerState:
        """Loop passes until stop_event is set or max_passes is reached."""
        stop_event = stop_event or asyncio.Event()
        attempts = 0
        logger.info("scheduler_started", pass_interval_sec=self._pass_interval_sec, max_passes=self._max_passes)
        while not stop_event.is_set():
            if self._max_passes is not None and attempts >= self._max_passes:
                break
            attempts += 1
            try:
                self.state.last_results = await self.run_pass()
                self.state.passes_completed += 1
            except Exception as e:
                self.state.passes_crashed += 1
                self.state.last_error = str(e)
                logger.exception("scheduler_pass_crashed_restarting", attempt=attempts, error=str(e))
                continue
            pause = self._pass_interval_sec
            if not pause and not self.state.last_results:
                pause = self._idle_sleep_sec
            if pause:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=pause)
                except asyncio.TimeoutError:
                    pass
            else:
                # Yield so other tasks (live monitors) get scheduled between passes
                await asyncio.sleep(0)
        logger.info(
            "scheduler_stopped",
            passes_completed=self.state.passes_completed,
            passes_crashed=self.state.passes_crashed,
        )
        return self.state


async def _run_service(settings: Settings, stop_event: asyncio.Event) -> None:
    """Build clients, then run the scheduler (and live monitors when enabled)."""
    import httpx

    from royalty_guard.database.database import get_store
    from royalty_guard.reconciliation.engine import EngineConfig
    from royalty_guard.reconciliation.normalizer import configure_strategies
    from royalty_guard.solana_listener.history import MarketplaceHistoryClient
    from royalty_guard.solana_listener.live import LiveSaleMonitor
    from royalty_guard.solana_listener.metadata import NftMetadataClient
    from royalty_guard.solana_listener.rpc import SolanaRpcClient

    configure_strategies(settings.log_payload_program_ids)
    store = get_store(settings.database_url)
    async with httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_sec)) as http:
        rpc = SolanaRpcClient(settings.solana_rpc_url, client=http)
        engine = ReconciliationEngine(
            store,
            MarketplaceHistoryClient(settings.history_api_url, settings.history_api_key, client=http),
            rpc,
            NftMetadataClient(settings.solana_rpc_url, client=http),
            EngineConfig.from_settings(settings),
        )
        scheduler = ReconciliationScheduler(engine, store, pass_interval_sec=settings.pass_interval_sec)
        tasks = [asyncio.create_task(scheduler.run_forever(stop_event))]
        if settings.enable_live:
            monitor = LiveSaleMonitor(rpc, store, engine, ws_url=settings.solana_ws_url)
            programs = await asyncio.to_thread(store.get_programs)
            tasks.extend(asyncio.create_task(monitor.run(p, stop_event)) for p in programs)
            logger.info("live_monitors_started", programs=[p.name for p in programs])
        await asyncio.gather(*tasks)


def run_scheduler(settings: Settings, stop_event: threading.Event | None = None) -> None:
    """
    Blocking entry for a background thread: run the service until stop_event
    (a threading.Event) is set.
    """

    async def _main() -> None:
        async_stop = asyncio.Event()
        if stop_event is not None:
            loop = asyncio.get_running_loop()

            def _watch() -> None:
                stop_event.wait()
                loop.call_soon_threadsafe(async_stop.set)

            threading.Thread(target=_watch, name="scheduler-stop-watch", daemon=True).start()
        await _run_service(settings, async_stop)

    asyncio.run(_main())
