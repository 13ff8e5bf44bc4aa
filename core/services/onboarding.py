# core/services/onboarding.py

"""
Payment setup for users: helper payout credentials (per provider), the
helper's payout dashboard, and Airwallex customer provisioning for requesters.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_email

from core.constants import PROVIDER_AIRWALLEX, PROVIDER_PAYPAL, PROVIDER_STRIPE
from core.models import PaymentProfile
from core.services import airwallex, stripe_connect
from core.services.errors import NotSupported, PreconditionError
from core.utils.iban import clean_iban, mask_iban, validate_iban
from core.utils.payment_provider import active_provider

logger = logging.getLogger(__name__)


def _base_url() -> str:
    return (getattr(settings, "APP_BASE_URL", "") or "http://localhost:3000").rstrip("/")


def payouts_page_url() -> str:
    return f"{_base_url()}/profile/payouts"


def get_profile(user, create: bool = False) -> PaymentProfile | None:
    if user is None:
        return None
    if create:
        profile, _ = PaymentProfile.objects.get_or_create(user=user)
        return profile
    return PaymentProfile.objects.filter(user=user).first()


# =============================================================================
# HELPER ONBOARDING
# =============================================================================

def helper_onboarding_status(user) -> Dict[str, Any]:
    """Where the helper stands for the active provider (GET)."""
    provider = active_provider()
    profile = get_profile(user)

    if provider == PROVIDER_STRIPE:
        account_id = profile.stripe_account_id if profile else ""
        if not account_id:
            return {
                "provider": provider,
                "onboarded": False,
                "message": "Payment account not created. Call POST to start onboarding.",
            }
        status = stripe_connect.get_onboarding_status(account_id)
        return {
            "provider": provider,
            "stripeAccountId": account_id,
            "onboarded": status["isFullyOnboarded"],
            "detailsSubmitted": status["detailsSubmitted"],
            "chargesEnabled": status["chargesEnabled"],
            "payoutsEnabled": status["payoutsEnabled"],
            "currentlyDue": status["currentlyDue"],
        }

    if provider == PROVIDER_PAYPAL:
        has_email = bool(profile and profile.paypal_email)
        return {
            "provider": provider,
            "onboarded": has_email,
            "hasPaypalEmail": has_email,
            "message": (
                "PayPal email is configured. Helper can receive payouts."
                if has_email else
                "Please add your PayPal email in your profile to receive payouts."
            ),
        }

    has_iban = bool(profile and profile.iban)
    return {
        "provider": PROVIDER_AIRWALLEX,
        "onboarded": has_iban,
        "hasIban": has_iban,
        "iban": mask_iban(profile.iban) if has_iban else "",
        "message": (
            "IBAN is configured. Helper can receive payouts."
            if has_iban else
            "Please add your IBAN in your profile to receive payouts."
        ),
    }


def start_helper_onboarding(user, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Set up the helper's payout credential for the active provider (POST).

    Stripe: create the express account if missing and return an onboarding link.
    PayPal: store ``paypal_email``. Airwallex: store ``iban``.
    """
    provider = active_provider()
    profile = get_profile(user, create=True)

    if provider == PROVIDER_STRIPE:
        account_id = profile.stripe_account_id
        if not account_id:
            account_id = stripe_connect.create_connected_account(
                helper_id=user.pk,
                email=user.email,
                country=data.get("country") or "IE",
            )
            profile.stripe_account_id = account_id
            profile.save(update_fields=["stripe_account_id", "updated_at"])

        link = stripe_connect.create_onboarding_link(
            account_id,
            refresh_url=f"{payouts_page_url()}?refresh=true",
            return_url=f"{payouts_page_url()}?onboarding=complete",
        )
        return {
            "provider": provider,
            "stripeAccountId": account_id,
            "onboardingUrl": link["url"],
            "expiresAt": link.get("expires_at"),
            "message": "Redirect user to onboardingUrl to complete Stripe setup",
        }

    if provider == PROVIDER_PAYPAL:
        email = (data.get("paypal_email") or data.get("paypalEmail") or "").strip()
        if email:
            try:
                validate_email(email)
            except ValidationError:
                raise PreconditionError("Invalid PayPal email", code="INVALID_EMAIL")
            if email != profile.paypal_email:
                profile.paypal_email = email
                profile.save(update_fields=["paypal_email", "updated_at"])
                logger.info(f"PayPal email saved for helper {user.pk}")
        return {**helper_onboarding_status(user), "setupUrl": payouts_page_url()}

    iban = clean_iban(data.get("iban"))
    if iban:
        if not validate_iban(iban):
            raise PreconditionError(
                "Invalid IBAN format",
                code="INVALID_IBAN",
                details="IBAN must be a valid format (15-34 characters, no dots or spaces)",
            )
        if iban != profile.iban:
            profile.iban = iban
            profile.save(update_fields=["iban", "updated_at"])
            logger.info(f"IBAN saved for helper {user.pk}")
    return {**helper_onboarding_status(user), "setupUrl": payouts_page_url()}


# =============================================================================
# HELPER DASHBOARD
# =============================================================================

def helper_dashboard(user) -> Dict[str, Any]:
    provider = active_provider()

    if provider == PROVIDER_STRIPE:
        profile = get_profile(user)
        account_id = profile.stripe_account_id if profile else ""
        if not account_id:
            raise PreconditionError(
                "Payment account not set up",
                code="SETUP_REQUIRED",
                extra={"provider": provider, "setupRequired": True, "setupUrl": payouts_page_url()},
            )

        status = stripe_connect.get_onboarding_status(account_id)
        if not status["isFullyOnboarded"]:
            raise PreconditionError(
                "Payment account onboarding not complete",
                code="ONBOARDING_INCOMPLETE",
                extra={
                    "provider": provider,
                    "onboardingRequired": True,
                    "onboardingStatus": status,
                    "setupUrl": payouts_page_url(),
                },
            )

        return {
            "provider": provider,
            "dashboardUrl": stripe_connect.create_dashboard_link(account_id),
            "message": "Redirect user to dashboardUrl to access payment dashboard",
        }

    # PayPal and Airwallex have no hosted dashboard; payouts are listed in the profile
    return {
        "provider": provider,
        "dashboardUrl": payouts_page_url(),
        "message": "View payouts in your profile",
    }


# =============================================================================
# CUSTOMER PROVISIONING
# =============================================================================

def create_customer(user, data: Dict[str, Any]) -> Dict[str, Any]:
    provider = active_provider()

    if provider == PROVIDER_STRIPE:
        raise NotSupported(
            "Customer creation not supported",
            details="The current payment provider manages customers within the checkout flow.",
        )
    if provider == PROVIDER_PAYPAL:
        raise NotSupported(
            "Customer creation not supported",
            details="PayPal uses email-based payouts. Add PayPal email in profile instead.",
        )

    profile = get_profile(user, create=True)
    if profile.airwallex_customer_id:
        return {"provider": provider, "customerId": profile.airwallex_customer_id, "created": False}

    email = data.get("email") or user.email
    first_name = data.get("first_name") or user.first_name
    last_name = data.get("last_name") or user.last_name
    if not email or not first_name or not last_name:
        raise PreconditionError(
            "Missing required fields",
            details="email, first_name, and last_name are required",
        )

    customer = airwallex.create_customer(
        email=email,
        first_name=first_name,
        last_name=last_name,
        merchant_customer_id=f"user_{user.pk}",
    )
    profile.airwallex_customer_id = customer["id"] or ""
    profile.save(update_fields=["airwallex_customer_id", "updated_at"])
    logger.info(f"Airwallex customer {customer['id']} created for user {user.pk}")
    return {"provider": provider, "customerId": customer["id"], "created": True}
