# core/services/airwallex.py

"""
Airwallex payment acceptance and payout (bank transfer) client.

Server side calls first log in with x-client-id / x-api-key and then use the
returned token as a Bearer token.
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
import requests
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

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
from core.utils.money import from_minor_units, to_minor_units, normalize_currency

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-airwallex-signature"

# Bank address fallback by IBAN country, used when the helper has none on file
DEFAULT_BENEFICIARY_ADDRESS = {
    "DE": {"street": "Musterstraße 123", "city": "Berlin", "postcode": "10115"},
    "PT": {"street": "Rua Example 123", "city": "Lisbon", "postcode": "1000-001"},
    "GB": {"street": "123 Test Street", "city": "London", "postcode": "SW1A 1AA"},
    "FR": {"street": "123 Rue Example", "city": "Paris", "postcode": "75001"},
    "ES": {"street": "Calle Ejemplo 123", "city": "Madrid", "postcode": "28001"},
    "IT": {"street": "Via Example 123", "city": "Rome", "postcode": "00100"},
    "NL": {"street": "Voorbeeldstraat 123", "city": "Amsterdam", "postcode": "1012 AB"},
}


def is_production() -> bool:
    return (getattr(settings, "AIRWALLEX_ENVIRONMENT", "") or "").lower() == "production"


def _airwallex_base_url() -> str:
    """Airwallex API base URL"""
    if is_production():
        return "https://api.airwallex.com/api/v1"
    return "https://api-demo.airwallex.com/api/v1"


def _timeout() -> int:
    return int(getattr(settings, "PAYMENT_PROVIDER_TIMEOUT", 30))


def _now_ms() -> int:
    return int(timezone.now().timestamp() * 1000)


def _request_id(prefix: str) -> str:
    return f"{prefix}_{_now_ms()}_{uuid.uuid4().hex[:8]}"


def _parse(response) -> Dict[str, Any]:
    try:
        return response.json() if response.content else {}
    except ValueError:
        return {"message": response.text[:500]}


def _login() -> str:
    """Exchange client id + api key for a short-lived bearer token."""
    client_id = getattr(settings, "AIRWALLEX_CLIENT_ID", "")
    api_key = getattr(settings, "AIRWALLEX_API_KEY", "")
    if not client_id or not api_key:
        logger.error("Airwallex credentials missing (AIRWALLEX_CLIENT_ID / AIRWALLEX_API_KEY)")
        raise ProviderConfigurationError("Airwallex credentials are not configured")

    url = f"{_airwallex_base_url()}/authentication/login"
    try:
        response = requests.post(
            url,
            headers={
                "Content-Type": "application/json",
                "x-client-id": client_id,
                "x-api-key": api_key,
            },
            timeout=_timeout(),
        )
    except requests.exceptions.Timeout:
        logger.error("Airwallex login timeout")
        raise ProviderTimeout()
    except requests.exceptions.RequestException as e:
        logger.error(f"Airwallex login error: {e}")
        raise ProviderTransportError("Could not reach Airwallex", details=str(e))

    data = _parse(response)
    if response.status_code != 200 or not data.get("token"):
        logger.error(f"Airwallex login failed: HTTP {response.status_code}")
        raise ProviderTransportError(
            "Airwallex authentication failed",
            provider_status=response.status_code,
            details=data,
        )
    return data["token"]


def _call(method: str, path: str, payload: Dict[str, Any] | None = None, action: str = "request") -> Dict[str, Any]:
    token = _login()
    url = f"{_airwallex_base_url()}{path}"

    try:
        response = requests.request(
            method,
            url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {token}",
            },
            json=payload,
            timeout=_timeout(),
        )
    except requests.exceptions.Timeout:
        logger.error(f"Airwallex {action} timeout")
        raise ProviderTimeout()
    except requests.exceptions.RequestException as e:
        logger.error(f"Airwallex {action} error: {e}")
        raise ProviderTransportError(f"Airwallex {action} failed", details=str(e))

    data = _parse(response)
    if response.status_code < 200 or response.status_code >= 300:
        logger.error(f"Airwallex {action} failed: HTTP {response.status_code} {data}")
        raise ProviderTransportError(
            data.get("message") or f"Airwallex {action} failed",
            provider_status=response.status_code,
            details=data,
        )

    logger.info(f"Airwallex {action} ok: {data.get('id', '')}")
    return data


# =============================================================================
# PAYMENT INTENTS
# =============================================================================

def create_payment_intent(
    amount_minor: int,
    currency: str,
    merchant_order_id: str,
    return_url: str | None = None,
    metadata: Dict[str, Any] | None = None,
    customer_id: str | None = None,
    payment_method_types: List[str] | None = None,
) -> Dict[str, Any]:
    """
    Create a payment intent.

    Airwallex takes the amount in major units, so ``amount_minor`` is converted
    back here; the merchant_order_id makes a retried request reuse the intent.

    Returns:
        {
            'id': str,
            'client_secret': str,
            'amount_minor': int,
            'currency': str,
            'status': str,
            'next_action_url': str | None,
            'raw': dict
        }
    """
    currency_u = normalize_currency(currency)
    payload: Dict[str, Any] = {
        "request_id": merchant_order_id,
        "amount": float(from_minor_units(amount_minor, currency_u)),
        "currency": currency_u,
        "merchant_order_id": merchant_order_id,
        "payment_method_types": payment_method_types or ["card", "multibanco"],
    }
    if return_url:
        payload["return_url"] = return_url
    if metadata:
        payload["metadata"] = metadata
    if customer_id:
        payload["customer_id"] = customer_id

    data = _call("POST", "/pa/payment_intents/create", payload, action="create payment intent")
    return {
        "id": data.get("id"),
        "client_secret": data.get("client_secret"),
        "amount_minor": amount_minor,
        "currency": data.get("currency") or currency_u,
        "status": data.get("status"),
        "next_action_url": (data.get("next_action") or {}).get("url"),
        "raw": data,
    }


def get_payment_intent(payment_intent_id: str) -> Dict[str, Any]:
    data = _call("GET", f"/pa/payment_intents/{payment_intent_id}", action="get payment intent")
    return {
        "id": data.get("id") or payment_intent_id,
        "status": data.get("status"),
        "amount": data.get("amount"),
        "currency": data.get("currency"),
        "merchant_order_id": data.get("merchant_order_id"),
        "metadata": data.get("metadata") or {},
        "raw": data,
    }


def confirm_payment_intent(payment_intent_id: str, payment_method: Dict[str, Any] | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"request_id": _request_id("confirm")}
    if payment_method:
        payload["payment_method"] = payment_method
    data = _call("POST", f"/pa/payment_intents/{payment_intent_id}/confirm", payload, action="confirm payment intent")
    return {
        "id": data.get("id") or payment_intent_id,
        "status": data.get("status"),
        "next_action_url": (data.get("next_action") or {}).get("url"),
        "raw": data,
    }


def create_customer(email: str, first_name: str, last_name: str, merchant_customer_id: str) -> Dict[str, Any]:
    payload = {
        "request_id": _request_id("customer"),
        "merchant_customer_id": merchant_customer_id,
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
    }
    data = _call("POST", "/pa/customers/create", payload, action="create customer")
    return {"id": data.get("id"), "raw": data}


# =============================================================================
# PAYOUTS (TRANSFERS)
# =============================================================================

def build_beneficiary(
    *,
    iban: str,
    account_holder_name: str,
    currency: str,
    address: Dict[str, str] | None = None,
) -> Dict[str, Any]:
    country_code = iban[:2]
    default_addr = DEFAULT_BENEFICIARY_ADDRESS.get(country_code) or DEFAULT_BENEFICIARY_ADDRESS["DE"]
    address = address or {}
    parts = account_holder_name.split(" ", 1)

    return {
        "type": "BANK_ACCOUNT",
        "entity_type": "PERSONAL",
        "first_name": parts[0] or account_holder_name,
        "last_name": parts[1] if len(parts) > 1 and parts[1] else account_holder_name,
        "address": {
            "street_address": address.get("street") or default_addr["street"],
            "city": address.get("city") or default_addr["city"],
            "postcode": address.get("postcode") or default_addr["postcode"],
            "country_code": address.get("country_code") or country_code,
        },
        "bank_details": {
            "account_name": account_holder_name,
            "bank_country_code": country_code,
            "account_currency": normalize_currency(currency),
            "iban": iban,
        },
    }


def create_transfer(
    *,
    amount: Decimal,
    currency: str,
    beneficiary: Dict[str, Any],
    request_id: str,
    reference: str,
    metadata: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """
    Validate the beneficiary, then create a LOCAL transfer.

    ``request_id`` is Airwallex's idempotency key: the same id never creates
    a second transfer.
    """
    currency_u = normalize_currency(currency)

    _call(
        "POST",
        "/beneficiaries/validate",
        {"beneficiary": beneficiary, "transfer_methods": ["LOCAL"]},
        action="validate beneficiary",
    )

    payload: Dict[str, Any] = {
        "request_id": request_id,
        "transfer_amount": to_minor_units(amount, currency_u),
        "transfer_currency": currency_u,
        "source_currency": currency_u,
        "transfer_method": "LOCAL",
        "reason": "PAYMENT_FOR_GOODS_OR_SERVICES",
        "reference": reference,
        "beneficiary": beneficiary,
    }
    if metadata:
        payload["metadata"] = metadata

    data = _call("POST", "/transfers/create", payload, action="create transfer")
    return {
        "id": data.get("id"),
        "status": data.get("status") or "PENDING",
        "raw": data,
    }


def get_transfer(transfer_id: str) -> Dict[str, Any]:
    data = _call("GET", f"/transfers/{transfer_id}", action="get transfer")
    amount = data.get("transfer_amount", data.get("amount"))
    currency = data.get("transfer_currency") or data.get("currency")
    return {
        "id": data.get("id") or transfer_id,
        "status": data.get("status"),
        "amount": from_minor_units(amount, currency or "EUR") if amount is not None else None,
        "currency": currency,
        "raw": data,
    }


# =============================================================================
# STATUS MAPPING
# =============================================================================

PAYMENT_INTENT_STATUS_MAP = {
    "SUCCEEDED": "paid",
    "CANCELLED": "failed",
    "REQUIRES_PAYMENT_METHOD": "pending",
    "REQUIRES_CUSTOMER_ACTION": "pending",
    "REQUIRES_CAPTURE": "pending",
    "PENDING": "pending",
}

TRANSFER_STATUS_MAP = {
    "PAID": "succeeded",
    "SENT": "succeeded",
    "COMPLETED": "succeeded",
    "SUCCEEDED": "succeeded",
    "FAILED": "failed",
    "CANCELLED": "failed",
    "RETURNED": "failed",
    "PENDING": "processing",
    "PROCESSING": "processing",
    "IN_APPROVAL": "processing",
    "SCHEDULED": "processing",
}


def map_payment_status(status: str | None) -> str:
    return PAYMENT_INTENT_STATUS_MAP.get((status or "").upper(), "pending")


def map_transfer_status(status: str | None) -> str:
    return TRANSFER_STATUS_MAP.get((status or "").upper(), "processing")


# =============================================================================
# WEBHOOKS
# =============================================================================

def verify_webhook_signature(payload: bytes, signature: str | None) -> None:
    """
    Verify Airwallex webhook signature (HMAC SHA256 hex of the raw body).
    Raises SignatureVerificationError on mismatch.
    """
    secret = getattr(settings, "AIRWALLEX_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("AIRWALLEX_WEBHOOK_SECRET is not set")
        raise ProviderConfigurationError("Airwallex webhook secret is not configured")

    if not signature:
        raise SignatureVerificationError(details="Missing signature header")

    computed = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(computed, signature.strip()):
        raise SignatureVerificationError()


def normalize_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Map an Airwallex event onto the internal event names.

    Charges arrive as charge.*, payouts as payout.transfer.*; payment.* and
    payout.* are older names for the same events. Returns None for events
    that do not move any status.
    """
    name = (event.get("name") or event.get("type") or "").lower()
    obj = (event.get("data") or {}).get("object") or event.get("data") or {}
    metadata = obj.get("metadata") or {}

    if name in ("charge.settled", "payment.succeeded", "payment_intent.succeeded"):
        kind = EVENT_CHARGE_SUCCEEDED
    elif name in ("charge.failed", "charge.suspended", "payment.failed", "payment.cancelled"):
        kind = EVENT_CHARGE_FAILED
    elif name in ("payout.transfer.paid", "payout.transfer.sent", "payout.succeeded"):
        kind = EVENT_PAYOUT_SUCCEEDED
    elif name in ("payout.transfer.failed", "payout.transfer.cancelled", "payout.failed", "payout.cancelled"):
        kind = EVENT_PAYOUT_FAILED
    else:
        return None

    if kind in (EVENT_CHARGE_SUCCEEDED, EVENT_CHARGE_FAILED):
        ref = obj.get("payment_intent_id") or obj.get("id") or obj.get("charge_id")
    else:
        ref = obj.get("id") or obj.get("transfer_id")

    return {
        "type": kind,
        "reference": ref,
        "task_id": metadata.get("task_id"),
        "failure_reason": obj.get("failure_reason") or obj.get("reason") or "",
        "native_type": name,
    }
