# core/services/stripe_connect.py

"""
Stripe Connect client: express accounts for helpers and hosted checkout
sessions using destination charges (the platform keeps the application fee,
the rest lands on the helper's connected account).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe
from django.conf import settings

from core.constants import (
    EVENT_CHARGE_FAILED,
    EVENT_CHARGE_SUCCEEDED,
    EVENT_PAYOUT_FAILED,
    EVENT_PAYOUT_SUCCEEDED,
)
from core.services.errors import (
    HelperNotOnboarded,
    ProviderConfigurationError,
    ProviderTimeout,
    ProviderTransportError,
    SignatureVerificationError,
)
from core.utils.money import FeeBreakdown, to_minor_units

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


def _configure() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        logger.error("STRIPE_SECRET_KEY is not set")
        raise ProviderConfigurationError("Stripe is not configured")

    stripe.api_key = secret_key
    # Retries are left to the caller (idempotency keys make them safe)
    stripe.max_network_retries = 0
    timeout = int(getattr(settings, "PAYMENT_PROVIDER_TIMEOUT", 30))
    if not isinstance(stripe.default_http_client, stripe.RequestsClient):
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)


def _wrap(action: str, e: Exception) -> Exception:
    """Map a Stripe SDK exception onto the payment error kinds."""
    if isinstance(e, stripe.APIConnectionError):
        logger.error(f"Stripe {action} connection error: {e}")
        if "timed out" in str(e).lower():
            return ProviderTimeout()
        return ProviderTransportError(f"Could not reach Stripe ({action})", details=str(e))

    if isinstance(e, stripe.AuthenticationError):
        logger.error(f"Stripe {action} authentication error: {e}")
        return ProviderConfigurationError("Stripe credentials rejected")

    logger.error(f"Stripe {action} error: {e}")
    return ProviderTransportError(
        getattr(e, "user_message", None) or f"Stripe {action} failed",
        provider_status=getattr(e, "http_status", None),
        details=str(e),
    )


# =============================================================================
# CONNECTED ACCOUNTS
# =============================================================================

def create_connected_account(helper_id: str, email: str, country: str = "IE") -> str:
    """Create an express account with a manual payout schedule. Returns acct_ id."""
    _configure()
    try:
        account = stripe.Account.create(
            type="express",
            country=(country or "IE").upper(),
            email=email or None,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            business_type="individual",
            metadata={"helper_id": str(helper_id), "platform": "taskorilla"},
            settings={"payouts": {"schedule": {"interval": "manual"}}},
        )
    except stripe.StripeError as e:
        raise _wrap("create account", e)

    logger.info(f"Stripe connected account created for helper {helper_id}: {account['id']}")
    return account["id"]


def create_onboarding_link(account_id: str, refresh_url: str, return_url: str) -> Dict[str, Any]:
    _configure()
    try:
        link = stripe.AccountLink.create(
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
    except stripe.StripeError as e:
        raise _wrap("create account link", e)
    return {"url": link["url"], "expires_at": link.get("expires_at")}


def create_dashboard_link(account_id: str) -> str:
    _configure()
    try:
        login_link = stripe.Account.create_login_link(account_id)
    except stripe.StripeError as e:
        raise _wrap("create login link", e)
    return login_link["url"]


def get_onboarding_status(account_id: str) -> Dict[str, Any]:
    _configure()
    try:
        account = stripe.Account.retrieve(account_id)
    except stripe.StripeError as e:
        raise _wrap("retrieve account", e)

    requirements = account.get("requirements") or {}
    details_submitted = bool(account.get("details_submitted"))
    charges_enabled = bool(account.get("charges_enabled"))
    payouts_enabled = bool(account.get("payouts_enabled"))

    return {
        "accountId": account.get("id") or account_id,
        "detailsSubmitted": details_submitted,
        "chargesEnabled": charges_enabled,
        "payoutsEnabled": payouts_enabled,
        "currentlyDue": list(requirements.get("currently_due") or []),
        "isFullyOnboarded": details_submitted and charges_enabled and payouts_enabled,
    }


def require_onboarded(account_id: str) -> Dict[str, Any]:
    """Raise HelperNotOnboarded (with the status detail) unless the account can take charges."""
    status = get_onboarding_status(account_id)
    if not status["isFullyOnboarded"]:
        raise HelperNotOnboarded(
            "Helper has not completed Stripe onboarding",
            onboarding_status=status,
        )
    return status


# =============================================================================
# CHECKOUT SESSIONS
# =============================================================================

def _with_session_placeholder(success_url: str) -> str:
    sep = "&" if "?" in success_url else "?"
    return f"{success_url}{sep}session_id={{CHECKOUT_SESSION_ID}}"


def _checkout_idempotency_key(task_id: int, total_minor: int, previous_session_id: str | None) -> str:
    return f"checkout-{task_id}-{total_minor}-{previous_session_id or 'first'}"


def create_checkout_session(
    *,
    task_id: int,
    task_title: str,
    breakdown: FeeBreakdown,
    destination_account: str,
    helper_id: int,
    requester_id: int,
    success_url: str,
    cancel_url: str,
    customer_email: str | None = None,
    previous_session_id: str | None = None,
) -> Dict[str, Any]:
    """
    Hosted checkout for the task budget plus the service fee, as two line items.

    The idempotency key is per task, total and attempt: a retried request
    returns the same session, a checkout after a failed session (identified
    by ``previous_session_id``) opens a new one.
    """
    _configure()
    currency = breakdown.currency.lower()
    metadata = {
        "task_id": str(task_id),
        "helper_id": str(helper_id),
        "tasker_id": str(requester_id),
        "platform": "taskorilla",
    }

    params: Dict[str, Any] = {
        "mode": "payment",
        "line_items": [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": task_title, "description": f"Task payment for: {task_title}"},
                    "unit_amount": to_minor_units(breakdown.base_amount, currency),
                },
                "quantity": 1,
            },
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": "Service Fee", "description": "Taskorilla platform fee"},
                    "unit_amount": to_minor_units(breakdown.service_fee, currency),
                },
                "quantity": 1,
            },
        ],
        "payment_intent_data": {
            "application_fee_amount": to_minor_units(breakdown.platform_fee, currency),
            "transfer_data": {"destination": destination_account},
            "metadata": {**metadata, **breakdown.as_metadata()},
        },
        "success_url": _with_session_placeholder(success_url),
        "cancel_url": cancel_url,
        "metadata": metadata,
    }
    if customer_email:
        params["customer_email"] = customer_email

    try:
        session = stripe.checkout.Session.create(
            idempotency_key=_checkout_idempotency_key(task_id, breakdown.total_charge_minor, previous_session_id),
            **params,
        )
    except stripe.StripeError as e:
        raise _wrap("create checkout session", e)

    if not session.get("url"):
        raise ProviderTransportError("Stripe did not return a checkout URL")

    logger.info(f"Stripe checkout session {session['id']} created for task {task_id}")
    return {"id": session["id"], "url": session["url"]}


# =============================================================================
# WEBHOOKS
# =============================================================================

def construct_webhook_event(payload: bytes, signature: str | None) -> Dict[str, Any]:
    """Verify the Stripe-Signature header and return the parsed event."""
    secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set")
        raise ProviderConfigurationError("Stripe webhook secret is not configured")

    if not signature:
        raise SignatureVerificationError(details="Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError:
        raise SignatureVerificationError()
    except ValueError:
        # Body is not JSON; treated like a forged request
        raise SignatureVerificationError(details="Invalid payload")
    return event


def normalize_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") != "paid":
            # Delayed payment methods settle later via async_payment_succeeded
            return None
        kind = EVENT_CHARGE_SUCCEEDED
    elif event_type in ("checkout.session.async_payment_succeeded", "payment_intent.succeeded"):
        kind = EVENT_CHARGE_SUCCEEDED
    elif event_type in (
        "checkout.session.async_payment_failed",
        "checkout.session.expired",
        "payment_intent.payment_failed",
    ):
        kind = EVENT_CHARGE_FAILED
    elif event_type == "payout.paid":
        kind = EVENT_PAYOUT_SUCCEEDED
    elif event_type == "payout.failed":
        kind = EVENT_PAYOUT_FAILED
    else:
        return None

    return {
        "type": kind,
        "reference": obj.get("id"),
        "task_id": metadata.get("task_id"),
        "failure_reason": obj.get("failure_message") or "",
        "native_type": event_type,
    }
