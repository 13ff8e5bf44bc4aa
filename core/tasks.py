# core/tasks.py

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def reconcile_open_payouts_task(limit: int = 200):
    """
    Poll open payouts (pending / processing) at the active provider and apply
    terminal statuses. Scheduled by beat; same logic as ``reconcile_payouts``.
    """
    from core.services.status import reconcile_open_payouts

    stats = reconcile_open_payouts(limit=limit)
    if stats['errors']:
        logger.warning(f"Payout reconciliation finished with {stats['errors']} lookup error(s)")
    return stats
