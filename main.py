"""
Main entrypoint: reconciliation scheduler in a background thread + FastAPI server in main thread.

The scheduler (and the live program monitors when ENABLE_LIVE is set) runs in a
daemon thread with its own event loop; the API runs in the main thread and
stays responsive. On SIGINT/SIGTERM the server shuts down, the scheduler is
signalled to stop and the process exits.

Env: SOLANA_RPC_URL, HISTORY_API_URL, HISTORY_API_KEY, DATABASE_URL, API_HOST, API_PORT, etc.

API-only (no scheduler): uvicorn royalty_guard.api_server.app:app --host 0.0.0.0 --port 8000
"""

import os
import sys
import threading

# Configure structured logging before other imports that may log
from royalty_guard.guard_logging import get_logger

logger = get_logger("main")

SHUTDOWN_JOIN_TIMEOUT_SEC = 15.0


def main() -> None:
    """Start the scheduler in a background thread, then run the FastAPI server in main thread."""
    from royalty_guard.config import get_settings
    from royalty_guard.config.env import mask_url
    from royalty_guard.core.exceptions import PersistError
    from royalty_guard.database import get_store
    from royalty_guard.reconciliation.normalizer import configure_strategies
    from royalty_guard.reconciliation.scheduler import run_scheduler

    try:
        settings = get_settings()
    except ValueError as e:
        logger.error("main_config_error", error=str(e))
        sys.exit(1)

    try:
        store = get_store(settings.database_url)
    except PersistError as e:
        logger.error("main_store_init_failed", database_url=mask_url(settings.database_url), error=str(e))
        sys.exit(1)
    collections = store.get_collections(active_only=True)
    if not collections:
        logger.warning("main_no_active_collections", message="Scheduler will idle until collections are added")
    logger.info(
        "main_config_loaded",
        rpc_url=mask_url(settings.solana_rpc_url),
        active_collections=len(collections),
        enable_live=settings.enable_live,
    )
    configure_strategies(settings.log_payload_program_ids)

    stop_event = threading.Event()
    scheduler_thread = threading.Thread(
        target=run_scheduler,
        args=(settings, stop_event),
        name="reconciliation-scheduler",
        daemon=True,
    )
    scheduler_thread.start()
    logger.info("main_scheduler_started", thread="daemon")

    from royalty_guard.api_server.app import app
    import uvicorn

    logger.info("main_server_starting", host=settings.api_host, port=settings.api_port)
    try:
        uvicorn.run(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=os.getenv("LOG_LEVEL", "info").lower(),
        )
    finally:
        stop_event.set()
        scheduler_thread.join(timeout=SHUTDOWN_JOIN_TIMEOUT_SEC)
        if scheduler_thread.is_alive():
            logger.warning("main_scheduler_shutdown_timeout", timeout_sec=SHUTDOWN_JOIN_TIMEOUT_SEC)
        else:
            logger.info("main_scheduler_stopped")


if __name__ == "__main__":
    main()
