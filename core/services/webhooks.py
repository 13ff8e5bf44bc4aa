# core/services/webhooks.py

"""
Inbound provider webhooks.

Order is fixed: provider gate, signature check, then parse and apply. Nothing
in the body is trusted (or even read for business fields) before the
signature has been verified.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

from core.constants import (
    EVENT_CHARGE_FAILED,
    EVENT_CHARGE_SUCCEEDED,
    EVENT_PAYOUT_FAILED,
    EVENT_PAYOUT_SUCCEEDED,
    PROVIDER_PAYPAL,
    PROVIDER_STRIPE,
)
from core.services import airwallex, paypal, stripe_connect
from core.services.errors import PreconditionError, SignatureVerificationError
from core.services.state_machine import (
    apply_payment_status,
    apply_payout_status,
    conflicting_payment_ref,
)
from core.utils.payment_provider import normalize_provider, require_enabled

logger = logging.getLogger(__name__)


def _load_json(body: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise PreconditionError("Invalid webhook payload", code="INVALID_PAYLOAD")
    if not isinstance(event, dict):
        raise PreconditionError("Invalid webhook payload", code="INVALID_PAYLOAD")
    return event


def _verified_event(provider: str, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
    if provider == PROVIDER_STRIPE:
        stripe_connect.construct_webhook_event(body, headers.get(stripe_connect.SIGNATURE_HEADER))
        return _load_json(body)

    if provider == PROVIDER_PAYPAL:
        # PayPal's verification API needs the event object itself
        try:
            event = _load_json(body)
        except PreconditionError:
            raise SignatureVerificationError(details="Invalid payload")
        paypal.verify_webhook_signature(headers, event)
        return event

    airwallex.verify_webhook_signature(body, headers.get(airwallex.SIGNATURE_HEADER))
    return _load_json(body)


def apply_event(provider: str, normalized: Dict[str, Any]) -> bool:
    """Apply a normalized event through the state machine. Returns True when state changed."""
    kind = normalized["type"]
    reference = normalized.get("reference")
    task_id = normalized.get("task_id")

    if kind == EVENT_CHARGE_SUCCEEDED:
        return apply_payment_status("paid", task_id=task_id, payment_ref=reference, provider=provider)
    if kind == EVENT_CHARGE_FAILED:
        return apply_payment_status("failed", task_id=task_id, payment_ref=reference, provider=provider)
    if kind == EVENT_PAYOUT_SUCCEEDED:
        return apply_payout_status("succeeded", payout_ref=reference, task_id=task_id)
    if kind == EVENT_PAYOUT_FAILED:
        return apply_payout_status(
            "failed",
            payout_ref=reference,
            task_id=task_id,
            failure_reason=normalized.get("failure_reason") or "",
        )
    return False


def handle_webhook(provider: str, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
    """
    Verify and apply one webhook delivery.

    Raises ProviderNotEnabled (503) for an inactive provider and
    SignatureVerificationError (400) before any state is touched.
    Unknown event types are acknowledged without a state change.
    """
    provider = normalize_provider(provider)
    require_enabled(provider)

    event = _verified_event(provider, body, headers)

    if provider == PROVIDER_STRIPE:
        normalized = stripe_connect.normalize_event(event)
        native_type = event.get("type")
    elif provider == PROVIDER_PAYPAL:
        native_type = (event.get("event_type") or "").upper()
        if native_type == "CHECKOUT.ORDER.APPROVED":
            return _capture_approved_order(event)
        normalized = paypal.normalize_event(event)
    else:
        normalized = airwallex.normalize_event(event)
        native_type = event.get("name") or event.get("type")

    if normalized is None:
        logger.info(f"{provider} webhook {native_type} ignored")
        return {"received": True}

    changed = apply_event(provider, normalized)
    logger.info(
        f"{provider} webhook {native_type} -> {normalized['type']} "
        f"(ref={normalized.get('reference')}, task={normalized.get('task_id')}, changed={changed})"
    )
    result = {"received": True, "event": normalized["type"], "changed": changed}

    if not changed and normalized["type"] == EVENT_CHARGE_SUCCEEDED:
        paid_with = conflicting_payment_ref(
            task_id=normalized.get("task_id"),
            payment_ref=normalized.get("reference"),
        )
        if paid_with:
            result["possibleDuplicateCharge"] = {
                "paymentIntentId": normalized.get("reference"),
                "paidWith": paid_with,
            }
    return result


def _capture_approved_order(event: Dict[str, Any]) -> Dict[str, Any]:
    """Buyer approved the order: capture it. The capture webhook then marks the task paid."""
    resource = event.get("resource") or {}
    order_id: Optional[str] = resource.get("id")
    if not order_id:
        logger.warning("PayPal CHECKOUT.ORDER.APPROVED without order id")
        return {"received": True}

    result = paypal.capture_order(order_id)
    logger.info(f"PayPal order {order_id} captured on approval ({result.get('status')})")
    return {"received": True, "captured": order_id}
