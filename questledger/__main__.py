"""
questledger.__main__ — Reconciliation worker for ``python -m questledger``
==========================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables + default settings exist.
4. Build and warm the ConfigCache.
5. Build the HTTP transfer service and the DisbursementCoordinator.
6. Every ``reconciliation_interval_seconds``: reload settings, then retry
   pending transfers that have sat past the retry window.
7. Once a day: dry-run balance audit (drift is logged, not corrected).

``--rebuild-balances`` runs the offline balance repair once and exits
(add ``--dry-run`` to only report drift).

Run with::

    python -m questledger
    python -m questledger --rebuild-balances --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from questledger.config import QuestLedgerConfig, load_config
from questledger.database.engine import create_db_engine, init_db, run_db
from questledger.engine.cache import ConfigCache
from questledger.errors import StorageUnavailable
from questledger.services.disbursement import DisbursementCoordinator
from questledger.services.reconciliation_service import rebuild_balances
from questledger.services.transfer import HttpTransferService

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("questledger")


AUDIT_INTERVAL_SECONDS = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Background loops
# ---------------------------------------------------------------------------
async def pending_loop(cfg: QuestLedgerConfig, coordinator: DisbursementCoordinator, cache: ConfigCache) -> None:
    """Retry stale pending transfers every ``reconciliation_interval_seconds``."""
    while True:
        try:
            await run_db(cache.reload)
            result = await coordinator.reconcile_pending()
            logger.info("Pending pass complete: %s", result)
        except StorageUnavailable as exc:
            logger.error("Pending pass skipped: %s", exc, extra={"task": "pending"})
        except Exception:
            logger.exception("Pending pass failed", extra={"task": "pending"})
        await asyncio.sleep(cfg.reconciliation_interval_seconds)


async def audit_loop(engine) -> None:
    """Report balance drift once a day without correcting it."""
    while True:
        try:
            result = await run_db(rebuild_balances, engine, dry_run=True)
            logger.info(
                "Balance audit complete: checked=%d drifted=%d",
                result["checked"], result["corrected"],
            )
        except Exception:
            logger.exception("Balance audit failed", extra={"task": "audit"})
        await asyncio.sleep(AUDIT_INTERVAL_SECONDS)


async def run_worker(cfg: QuestLedgerConfig, engine, coordinator: DisbursementCoordinator, cache: ConfigCache) -> None:
    """Run the background loops until cancelled, then drain in-flight work."""
    logger.info(
        "Reconciliation worker started — every %ds", cfg.reconciliation_interval_seconds
    )
    try:
        await asyncio.gather(
            pending_loop(cfg, coordinator, cache),
            audit_loop(engine),
        )
    finally:
        await coordinator.drain()


def main(argv: list[str] | None = None) -> None:
    """Bootstrap and run the QuestLedger reconciliation worker."""
    parser = argparse.ArgumentParser(prog="questledger")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--rebuild-balances", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config(args.config)
    logger.info("Config loaded — App: %s", cfg.app_name)

    # 3. Database.
    engine = create_db_engine(statement_timeout=cfg.storage_timeout_seconds)
    init_db(engine)

    if args.rebuild_balances:
        report = rebuild_balances(engine, dry_run=args.dry_run)
        logger.info(
            "Rebuild complete: %d checked, %d corrected",
            report["checked"], report["corrected"],
        )
        return

    token = os.getenv("TREASURY_API_TOKEN")
    if not token:
        logger.critical(
            "TREASURY_API_TOKEN is not set.  "
            "Copy .env.example → .env and paste the treasury gateway token."
        )
        sys.exit(1)

    # 4. Settings cache.
    cache = ConfigCache(engine)
    cache.load_all()

    # 5. Coordinator.
    transfer = HttpTransferService(
        cfg.transfer.gateway_url,
        token,
        timeout=cfg.transfer.timeout_seconds,
        network=cfg.transfer.network,
    )
    coordinator = DisbursementCoordinator.from_config(cfg, engine, cache, transfer)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    try:
        asyncio.run(run_worker(cfg, engine, coordinator, cache))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
