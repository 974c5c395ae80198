"""
Background job bodies, shared by the scheduler and the CLI.

Both expect an active app context; each commits its own work.
"""
import logging

from bookd import db
from bookd.services import build_ledger, run_reconciliation

logger = logging.getLogger(__name__)


def mature_earnings():
    """Sweep every trucker's pending entries that are due. Returns the count."""
    try:
        count = build_ledger().mature_entries()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return count


def reconcile_payouts():
    return run_reconciliation()
