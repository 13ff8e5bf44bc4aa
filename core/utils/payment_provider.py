# core/utils/payment_provider.py

"""
Active payment provider resolution for Taskorilla.

Exactly one provider handles checkouts, payouts and webhooks at a time. It is
read from ``settings.PAYMENT_PROVIDER`` on every call, never cached.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.conf import settings

from core.constants import (
    DEFAULT_PAYMENT_PROVIDER,
    PAYMENT_PROVIDERS,
    PROVIDER_AIRWALLEX,
    PROVIDER_PAYPAL,
    PROVIDER_STRIPE,
)
from core.services.errors import ProviderNotEnabled

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# SELECTOR
# ═══════════════════════════════════════════════════════════════════════════════

def normalize_provider(value: str | None) -> str:
    return (value or "").strip().lower()


def active_provider() -> str:
    """Return the configured provider, falling back to Airwallex for unknown values."""
    configured = normalize_provider(getattr(settings, "PAYMENT_PROVIDER", ""))
    if configured in PAYMENT_PROVIDERS:
        return configured
    if configured:
        logger.warning(f"Unknown PAYMENT_PROVIDER '{configured}', using '{DEFAULT_PAYMENT_PROVIDER}'")
    return DEFAULT_PAYMENT_PROVIDER


def is_enabled(provider: str) -> bool:
    return normalize_provider(provider) == active_provider()


def provider_config() -> Dict[str, Any]:
    provider = active_provider()
    return {
        "provider": provider,
        "isStripeEnabled": provider == PROVIDER_STRIPE,
        "isAirwallexEnabled": provider == PROVIDER_AIRWALLEX,
        "isPayPalEnabled": provider == PROVIDER_PAYPAL,
        "message": f"Payment provider is set to '{provider}'",
    }


# ═══════════════════════════════════════════════════════════════════════════════
# GATE
# ═══════════════════════════════════════════════════════════════════════════════

def not_enabled_error(requested: str) -> Optional[ProviderNotEnabled]:
    """None when ``requested`` is the active provider, else the 503 error to return."""
    current = active_provider()
    requested = normalize_provider(requested)
    if requested == current:
        return None
    return ProviderNotEnabled(current_provider=current, requested_provider=requested)


def require_enabled(requested: str) -> None:
    """Raise ``ProviderNotEnabled`` unless ``requested`` is the active provider."""
    error = not_enabled_error(requested)
    if error is not None:
        logger.info(f"Rejected call for inactive provider '{error.requested_provider}' (active: '{error.current_provider}')")
        raise error
