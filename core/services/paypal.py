# core/services/paypal.py

"""
PayPal orders (checkout) and Payouts (payout-by-email) REST client.
"""

from __future__ import annotations

import uuid
import requests
import logging
from decimal import Decimal
from typing import Optional, Dict, Any

from django.conf import settings
from django.utils import timezone

from core.constants import (
    EVENT_CHARGE_FAILED,
    EVENT_CHARGE_SUCCEEDED,
    EVENT_PAYOUT_FAILED,
    EVENT_PAYOUT_SUCCEEDED,
)
from core.services.errors import (
    ProviderConfigurationError,
    ProviderTimeout,
    ProviderTransportError,
    SignatureVerificationError,
)
from core.utils.money import normalize_currency, quantize_money

logger = logging.getLogger(__name__)

# Transmission headers PayPal signs every webhook delivery with
WEBHOOK_HEADERS = (
    "PAYPAL-AUTH-ALGO",
    "PAYPAL-CERT-URL",
    "PAYPAL-TRANSMISSION-ID",
    "PAYPAL-TRANSMISSION-SIG",
    "PAYPAL-TRANSMISSION-TIME",
)


def is_production() -> bool:
    return (getattr(settings, "PAYPAL_ENV", "") or "").lower() == "production"


def _paypal_base_url() -> str:
    """PayPal API base URL"""
    if is_production():
        return "https://api.paypal.com"
    return "https://api.sandbox.paypal.com"


def _timeout() -> int:
    return int(getattr(settings, "PAYMENT_PROVIDER_TIMEOUT", 30))


def _parse(response) -> Dict[str, Any]:
    try:
        return response.json() if response.content else {}
    except ValueError:
        return {"message": response.text[:500]}


def _access_token() -> str:
    """OAuth2 client-credentials token."""
    client_id = getattr(settings, "PAYPAL_CLIENT_ID", "")
    client_secret = getattr(settings, "PAYPAL_CLIENT_SECRET", "")
    if not client_id or not client_secret:
        logger.error("PayPal credentials missing (PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET)")
        raise ProviderConfigurationError("PayPal credentials are not configured")

    try:
        response = requests.post(
            f"{_paypal_base_url()}/v1/oauth2/token",
            auth=(client_id, client_secret),
            headers={"Accept": "application/json"},
            data={"grant_type": "client_credentials"},
            timeout=_timeout(),
        )
    except requests.exceptions.Timeout:
        logger.error("PayPal OAuth timeout")
        raise ProviderTimeout()
    except requests.exceptions.RequestException as e:
        logger.error(f"PayPal OAuth error: {e}")
        raise ProviderTransportError("Could not reach PayPal", details=str(e))

    data = _parse(response)
    if response.status_code != 200 or not data.get("access_token"):
        logger.error(f"PayPal OAuth failed: HTTP {response.status_code}")
        raise ProviderTransportError(
            "PayPal authentication failed",
            provider_status=response.status_code,
            details=data,
        )
    return data["access_token"]


def _call(
    method: str,
    path: str,
    payload: Dict[str, Any] | None = None,
    action: str = "request",
    request_id: str | None = None,
) -> Dict[str, Any]:
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {_access_token()}",
    }
    if request_id:
        headers["PayPal-Request-Id"] = request_id

    try:
        response = requests.request(
            method,
            f"{_paypal_base_url()}{path}",
            headers=headers,
            json=payload,
            timeout=_timeout(),
        )
    except requests.exceptions.Timeout:
        logger.error(f"PayPal {action} timeout")
        raise ProviderTimeout()
    except requests.exceptions.RequestException as e:
        logger.error(f"PayPal {action} error: {e}")
        raise ProviderTransportError(f"PayPal {action} failed", details=str(e))

    data = _parse(response)
    if response.status_code < 200 or response.status_code >= 300:
        logger.error(f"PayPal {action} failed: HTTP {response.status_code} {data}")
        raise ProviderTransportError(
            data.get("message") or f"PayPal {action} failed",
            provider_status=response.status_code,
            details=data,
        )
    return data


# =============================================================================
# ORDERS (CHECKOUT)
# =============================================================================

def create_order(
    *,
    task_id: int,
    amount: Decimal,
    currency: str,
    return_url: str,
    cancel_url: str,
    description: str = "",
) -> Dict[str, Any]:
    """
    Create an order with intent CAPTURE.

    Returns:
        {
            'id': str,            # order id, stored as the task's payment_intent_id
            'status': str,
            'approval_url': str,  # where the requester approves the payment
            'raw': dict
        }
    """
    currency_u = normalize_currency(currency)
    purchase_unit: Dict[str, Any] = {
        "amount": {
            "currency_code": currency_u,
            "value": str(quantize_money(amount, currency_u)),
        },
        "custom_id": str(task_id),
    }
    if description:
        purchase_unit["description"] = description[:127]

    payload = {
        "intent": "CAPTURE",
        "purchase_units": [purchase_unit],
        "application_context": {
            "return_url": return_url,
            "cancel_url": cancel_url,
            "brand_name": "Taskorilla",
            "user_action": "PAY_NOW",
        },
    }

    data = _call("POST", "/v2/checkout/orders", payload, action="create order")
    approval_url = next(
        (link.get("href") for link in data.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
        None,
    )
    if not approval_url:
        raise ProviderTransportError("PayPal did not return an approval URL", details=data)

    logger.info(f"PayPal order {data.get('id')} created for task {task_id}")
    return {
        "id": data.get("id"),
        "status": data.get("status"),
        "approval_url": approval_url,
        "raw": data,
    }


def capture_order(order_id: str) -> Dict[str, Any]:
    data = _call(
        "POST",
        f"/v2/checkout/orders/{order_id}/capture",
        {},
        action="capture order",
        request_id=f"capture-{order_id}",
    )
    return {"id": data.get("id") or order_id, "status": data.get("status"), "raw": data}


def get_order(order_id: str) -> Dict[str, Any]:
    data = _call("GET", f"/v2/checkout/orders/{order_id}", action="get order")
    units = data.get("purchase_units") or [{}]
    amount = units[0].get("amount") or {}
    return {
        "id": data.get("id") or order_id,
        "status": data.get("status"),
        "amount": amount.get("value"),
        "currency": amount.get("currency_code"),
        "custom_id": units[0].get("custom_id"),
        "raw": data,
    }


# =============================================================================
# PAYOUTS
# =============================================================================

def create_payout(
    *,
    receiver_email: str,
    amount: Decimal,
    currency: str,
    task_id: int | None = None,
    idempotency_key: str | None = None,
) -> Dict[str, Any]:
    """
    Send a payout to a PayPal email.

    PayPal refuses a repeated sender_batch_id, so deriving it from the
    idempotency key makes a retried request safe.

    Returns:
        {
            'success': bool,        # batch accepted (SUCCESS or PENDING)
            'batch_id': str,
            'batch_status': str,
            'raw': dict
        }
    """
    currency_u = normalize_currency(currency)
    if idempotency_key:
        sender_batch_id = f"payout_{idempotency_key}"[:127]
    else:
        sender_batch_id = f"payout_{int(timezone.now().timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"

    payload = {
        "sender_batch_header": {
            "sender_batch_id": sender_batch_id,
            "email_subject": "You have a payout!",
            "email_message": "You have received a payout from Taskorilla.",
        },
        "items": [
            {
                "recipient_type": "EMAIL",
                "amount": {
                    "value": str(quantize_money(amount, currency_u)),
                    "currency": currency_u,
                },
                "note": "Payout for completed task",
                "sender_item_id": f"task_{task_id}" if task_id else f"item_{uuid.uuid4().hex[:12]}",
                "receiver": receiver_email,
            }
        ],
    }

    data = _call("POST", "/v1/payments/payouts", payload, action="create payout", request_id=idempotency_key)
    header = data.get("batch_header") or {}
    batch_status = (header.get("batch_status") or "").upper()

    logger.info(f"PayPal payout batch {header.get('payout_batch_id')} status {batch_status}")
    return {
        "success": batch_status in ("SUCCESS", "PENDING"),
        "batch_id": header.get("payout_batch_id") or "",
        "batch_status": batch_status,
        "raw": data,
    }


def get_payout_batch(batch_id: str) -> Dict[str, Any]:
    data = _call("GET", f"/v1/payments/payouts/{batch_id}", action="get payout batch")
    header = data.get("batch_header") or {}
    amount = header.get("amount") or {}
    return {
        "id": header.get("payout_batch_id") or batch_id,
        "batch_status": (header.get("batch_status") or "UNKNOWN").upper(),
        "amount": amount.get("value"),
        "currency": amount.get("currency"),
        "raw": data,
    }


# =============================================================================
# STATUS MAPPING
# =============================================================================

ORDER_STATUS_MAP = {
    "COMPLETED": "paid",
    "VOIDED": "failed",
    "CREATED": "pending",
    "SAVED": "pending",
    "APPROVED": "pending",
    "PAYER_ACTION_REQUIRED": "pending",
}

BATCH_STATUS_MAP = {
    "SUCCESS": "succeeded",
    "DENIED": "failed",
    "CANCELED": "failed",
    "PENDING": "processing",
    "PROCESSING": "processing",
    "NEW": "processing",
}


def map_order_status(status: str | None) -> str:
    return ORDER_STATUS_MAP.get((status or "").upper(), "pending")


def map_batch_status(status: str | None) -> str:
    return BATCH_STATUS_MAP.get((status or "").upper(), "processing")


# =============================================================================
# WEBHOOKS
# =============================================================================

def verify_webhook_signature(headers, event: Dict[str, Any]) -> None:
    """
    Ask PayPal to verify the transmission signature of a webhook delivery.
    ``headers`` is the request header mapping (case-insensitive lookups).
    """
    webhook_id = getattr(settings, "PAYPAL_WEBHOOK_ID", "")
    if not webhook_id:
        logger.error("PAYPAL_WEBHOOK_ID is not set")
        raise ProviderConfigurationError("PayPal webhook id is not configured")

    values = {name: headers.get(name) for name in WEBHOOK_HEADERS}
    if not all(values.values()):
        raise SignatureVerificationError(details="Missing PayPal webhook signature headers")

    payload = {
        "auth_algo": values["PAYPAL-AUTH-ALGO"],
        "cert_url": values["PAYPAL-CERT-URL"],
        "transmission_id": values["PAYPAL-TRANSMISSION-ID"],
        "transmission_sig": values["PAYPAL-TRANSMISSION-SIG"],
        "transmission_time": values["PAYPAL-TRANSMISSION-TIME"],
        "webhook_id": webhook_id,
        "webhook_event": event,
    }

    try:
        data = _call("POST", "/v1/notifications/verify-webhook-signature", payload, action="verify webhook")
    except ProviderTransportError as e:
        if e.provider_status and 400 <= e.provider_status < 500:
            raise SignatureVerificationError()
        raise

    if data.get("verification_status") != "SUCCESS":
        raise SignatureVerificationError()


def normalize_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    event_type = (event.get("event_type") or "").upper()
    resource = event.get("resource") or {}

    if event_type in ("PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED"):
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        return {
            "type": EVENT_CHARGE_SUCCEEDED if event_type.endswith("COMPLETED") else EVENT_CHARGE_FAILED,
            "reference": order_id or resource.get("id"),
            "task_id": resource.get("custom_id"),
            "failure_reason": "",
            "native_type": event_type,
        }

    if event_type in (
        "PAYMENT.PAYOUTS-ITEM.SUCCEEDED",
        "PAYMENT.PAYOUTSBATCH.SUCCESS",
        "PAYMENT.PAYOUTS-ITEM.FAILED",
        "PAYMENT.PAYOUTSBATCH.DENIED",
    ):
        succeeded = event_type.endswith("SUCCEEDED") or event_type.endswith("SUCCESS")
        batch_id = resource.get("payout_batch_id") or (resource.get("batch_header") or {}).get("payout_batch_id")
        sender_item_id = (resource.get("payout_item") or {}).get("sender_item_id") or ""
        errors = resource.get("errors") or []
        if isinstance(errors, dict):
            errors = [errors]
        return {
            "type": EVENT_PAYOUT_SUCCEEDED if succeeded else EVENT_PAYOUT_FAILED,
            "reference": batch_id,
            "task_id": sender_item_id[len("task_"):] if sender_item_id.startswith("task_") else None,
            "failure_reason": (errors[0].get("message") if errors else "") or "",
            "native_type": event_type,
        }

    return None
