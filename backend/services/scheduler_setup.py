"""
scheduler_setup.py
------------------
APScheduler wiring for the settlement engine.

FILE: backend/services/scheduler_setup.py

SCHEDULE:
  every RECONCILIATION_INTERVAL_SECONDS (default 5 s)
            → bank transfer reconciliation scan
              Overlapping runs are allowed; the engine's VerificationGuard
              keeps each payment to one verification at a time.
  every CRYPTO_RATE_REFRESH_SECONDS (default 3 s)
            → simulated crypto exchange rate refresh

STARTUP USAGE:
    from services.scheduler_setup import setup_scheduler
    scheduler = AsyncIOScheduler()
    setup_scheduler(scheduler, engine)
    scheduler.start()
"""

import logging

from apscheduler.triggers.interval import IntervalTrigger

from settlement.config import reconciliation_interval_seconds, crypto_rate_refresh_seconds

logger = logging.getLogger(__name__)

# Scans may overlap when a bank verification outlasts the interval
RECONCILIATION_MAX_INSTANCES = 3


# ---------------------------------------------------------------------------
# Public entry point, call once at app startup
# ---------------------------------------------------------------------------

def setup_scheduler(scheduler, engine) -> None:
    """
    Register settlement jobs with the provided APScheduler instance.

    Parameters
    ----------
    scheduler : AsyncIOScheduler
        The APScheduler instance created at app startup.
    engine    : settlement.engine.SettlementEngine
        Engine whose loop and price service the jobs drive.

    Call this BEFORE scheduler.start().
    """
    reconcile_every = reconciliation_interval_seconds()
    refresh_every = crypto_rate_refresh_seconds()

    scheduler.add_job(
        _make_reconciliation_job(engine),
        IntervalTrigger(seconds=reconcile_every),
        id="bank_reconciliation",
        replace_existing=True,
        max_instances=RECONCILIATION_MAX_INSTANCES,
        coalesce=True,
        misfire_grace_time=reconcile_every,
    )

    scheduler.add_job(
        _make_rate_refresh_job(engine),
        IntervalTrigger(seconds=refresh_every),
        id="crypto_rate_refresh",
        replace_existing=True,
        coalesce=True,
        misfire_grace_time=refresh_every,
    )

    logger.info(
        f"Settlement scheduler registered: "
        f"reconciliation every {reconcile_every}s | crypto rates every {refresh_every}s"
    )


# ---------------------------------------------------------------------------
# Job factories
# ---------------------------------------------------------------------------

def _make_reconciliation_job(engine):
    """Returns the reconciliation coroutine. Errors are logged, the next run retries."""
    async def reconciliation_job():
        try:
            settled = await engine.run_reconciliation_scan()
            if settled:
                logger.info("Reconciliation run settled: %s", settled)
        except Exception as e:
            logger.error("Reconciliation run failed: %s", e, exc_info=True)

    return reconciliation_job


def _make_rate_refresh_job(engine):
    def rate_refresh_job():
        engine.refresh_crypto_rates()

    return rate_refresh_job
