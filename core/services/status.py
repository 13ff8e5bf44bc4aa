# core/services/status.py

"""
Status polling for payments and payouts, plus the periodic payout reconciliation.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from core.constants import OPEN_PAYOUT_STATUSES, PROVIDER_PAYPAL, PROVIDER_STRIPE
from core.models import PayoutRecord
from core.services import airwallex, paypal
from core.services.errors import NotSupported, PaymentError, PreconditionError
from core.services.state_machine import apply_payout_status
from core.utils.payment_provider import active_provider

logger = logging.getLogger(__name__)

TERMINAL_PAYOUT_STATUSES = ("succeeded", "failed")


def payment_status(ref: str) -> Dict[str, Any]:
    """Read-only lookup of a charge at the provider. Returns {id, status, amount, currency}."""
    if not ref:
        raise PreconditionError("Missing payment reference")

    provider = active_provider()

    if provider == PROVIDER_STRIPE:
        raise NotSupported(
            "Status check not supported",
            details="The current payment provider reports payment status via webhooks.",
        )

    if provider == PROVIDER_PAYPAL:
        order = paypal.get_order(ref)
        return {
            "id": order["id"],
            "status": paypal.map_order_status(order["status"]),
            "providerStatus": order["status"],
            "amount": order["amount"],
            "currency": order["currency"],
        }

    intent = airwallex.get_payment_intent(ref)
    return {
        "id": intent["id"],
        "status": airwallex.map_payment_status(intent["status"]),
        "providerStatus": intent["status"],
        "amount": intent["amount"],
        "currency": intent["currency"],
    }


def payout_status(ref: str) -> Dict[str, Any]:
    """
    Look up a payout at the provider and bring the stored PayoutRecord / task
    in line when the provider reports a terminal status.
    """
    if not ref:
        raise PreconditionError("Missing payoutId")

    provider = active_provider()

    if provider == PROVIDER_STRIPE:
        raise NotSupported(
            "Status check not supported",
            details="The current payment provider handles payouts automatically.",
        )

    if provider == PROVIDER_PAYPAL:
        batch = paypal.get_payout_batch(ref)
        status = paypal.map_batch_status(batch["batch_status"])
        result = {
            "payoutId": batch["id"],
            "status": status,
            "batchStatus": batch["batch_status"],
            "amount": batch["amount"],
        }
    else:
        transfer = airwallex.get_transfer(ref)
        status = airwallex.map_transfer_status(transfer["status"])
        result = {
            "payoutId": transfer["id"],
            "status": status,
            "amount": str(transfer["amount"]) if transfer["amount"] is not None else None,
            "currency": transfer["currency"],
        }

    if status in TERMINAL_PAYOUT_STATUSES:
        result["updated"] = apply_payout_status(status, payout_ref=ref)

    return result


def reconcile_open_payouts(limit: int = 200) -> Dict[str, int]:
    """
    Poll every open PayoutRecord of the active provider. Used by the beat task
    and the ``reconcile_payouts`` command.
    """
    provider = active_provider()
    stats = {"checked": 0, "updated": 0, "errors": 0}

    if provider == PROVIDER_STRIPE:
        return stats

    refs = list(
        PayoutRecord.objects
        .filter(provider=provider, status__in=OPEN_PAYOUT_STATUSES)
        .exclude(provider_payout_id="")
        .order_by("created_at")
        .values_list("provider_payout_id", flat=True)[:limit]
    )

    for ref in refs:
        stats["checked"] += 1
        try:
            result = payout_status(ref)
        except PaymentError as e:
            stats["errors"] += 1
            logger.warning(f"Reconcile: payout {ref} lookup failed: {e.code} {e.message}")
            continue
        if result.get("updated"):
            stats["updated"] += 1

    logger.info(f"Payout reconciliation ({provider}): {stats}")
    return stats
