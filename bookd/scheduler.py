"""
Bookd Background Scheduler

Runs periodic tasks:
- Mature referral earnings past their 7-day delay (MATURATION_INTERVAL_MINUTES)
- Reconcile pending payouts against PayPal (RECONCILE_INTERVAL_MINUTES)

Only starts when ENABLE_SCHEDULER=true. Both jobs are safe if several
instances run them at once.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


def _mature_earnings(app):
    """Promote due earnings entries from pending to payable."""
    with app.app_context():
        from bookd.jobs import mature_earnings
        try:
            count = mature_earnings()
        except Exception:
            logger.exception("Scheduler: earnings maturation failed")
            return
        if count > 0:
            logger.info("Scheduler: matured %d earnings entries", count)


def _reconcile_payouts(app):
    """Catch up on stuck payouts, unknown submissions and incomplete fundings."""
    with app.app_context():
        from bookd.jobs import reconcile_payouts
        try:
            summary = reconcile_payouts()
        except Exception:
            logger.exception("Scheduler: payout reconciliation failed")
            return
        if summary.checked:
            logger.info("Scheduler: reconciled %d payouts (%d errors)", summary.checked, summary.errors)


def init_scheduler(app):
    """Initialize and start the background scheduler."""
    if not app.config.get("ENABLE_SCHEDULER"):
        logger.info("Scheduler disabled (set ENABLE_SCHEDULER=true to enable)")
        return None

    try:
        scheduler = BackgroundScheduler(daemon=True)

        scheduler.add_job(
            _mature_earnings,
            "interval",
            minutes=app.config["MATURATION_INTERVAL_MINUTES"],
            args=[app],
            id="mature_earnings",
            name="Mature referral earnings",
            max_instances=1,
            coalesce=True,
        )

        scheduler.add_job(
            _reconcile_payouts,
            "interval",
            minutes=app.config["RECONCILE_INTERVAL_MINUTES"],
            args=[app],
            id="reconcile_payouts",
            name="Reconcile pending payouts",
            max_instances=1,
            coalesce=True,
        )

        scheduler.start()
        logger.info("Background scheduler started with 2 jobs")
        return scheduler
    except Exception:
        logger.exception("Failed to start scheduler")
        return None
