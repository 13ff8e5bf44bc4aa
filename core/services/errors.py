# core/services/errors.py

"""
Error kinds raised by the payment layer.

Adapters convert provider SDK / HTTP failures into one of these before
returning, so views only ever deal with ``PaymentError``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from django.conf import settings


class PaymentError(Exception):
    """Base class for payment errors. Carries the HTTP status and a stable code."""

    status = 500
    code = "PAYMENT_ERROR"
    default_message = "Payment error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status: int | None = None,
        details: Any = None,
        extra: Dict[str, Any] | None = None,
    ):
        self.message = message or self.default_message
        if code:
            self.code = code
        if status:
            self.status = status
        self.details = details
        self.extra = extra or {}
        super().__init__(self.message)

    def as_response_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        body.update(self.extra)
        return body


class ProviderConfigurationError(PaymentError):
    """Credentials or secrets are missing. Detail is logged, never returned."""

    status = 500
    code = "CONFIGURATION_ERROR"
    default_message = "Payment provider is not configured"

    def as_response_body(self) -> Dict[str, Any]:
        return {"error": self.default_message, "code": self.code}


class PreconditionError(PaymentError):
    status = 400
    code = "INVALID_REQUEST"
    default_message = "Invalid request"


class NotFound(PreconditionError):
    status = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class Forbidden(PreconditionError):
    status = 403
    code = "FORBIDDEN"
    default_message = "You are not allowed to do this"


class HelperNotOnboarded(PreconditionError):
    code = "HELPER_NOT_ONBOARDED"
    default_message = "Helper has not completed payment setup"

    def __init__(self, message: str | None = None, *, onboarding_status: Optional[Dict[str, Any]] = None, **kwargs):
        extra = kwargs.pop("extra", None) or {}
        if onboarding_status is not None:
            extra["onboardingStatus"] = onboarding_status
        super().__init__(message, extra=extra, **kwargs)


class InvalidTransition(PreconditionError):
    code = "INVALID_TRANSITION"
    default_message = "Status transition not allowed"


class ProviderTransportError(PaymentError):
    """
    Network failure or non-2xx answer from a provider.

    ``status`` is the provider's status code when it is a client-safe 4xx,
    otherwise 502. Raw provider payloads are only returned outside production.
    """

    status = 502
    code = "PROVIDER_ERROR"
    default_message = "Payment provider request failed"
    retryable = True

    def __init__(self, message: str | None = None, *, provider_status: int | None = None, **kwargs):
        self.provider_status = provider_status
        if provider_status and 400 <= provider_status < 500 and provider_status not in (401, 403):
            kwargs.setdefault("status", provider_status)
        super().__init__(message, **kwargs)

    def as_response_body(self) -> Dict[str, Any]:
        body = super().as_response_body()
        if not settings.DEBUG:
            body.pop("details", None)
        return body


class ProviderTimeout(ProviderTransportError):
    status = 504
    code = "PROVIDER_TIMEOUT"
    default_message = "Payment provider timed out, please try again"


class PayoutFailed(ProviderTransportError):
    code = "PAYOUT_FAILED"
    default_message = "Payout failed"
    retryable = False

    def as_response_body(self) -> Dict[str, Any]:
        # Batch / transfer reference is kept for support traceability
        return PaymentError.as_response_body(self)


class SignatureVerificationError(PaymentError):
    status = 400
    code = "INVALID_SIGNATURE"
    default_message = "Webhook signature verification failed"


class NotSupported(PaymentError):
    status = 501
    code = "NOT_SUPPORTED"
    default_message = "Operation not supported by the active payment provider"


class ProviderNotEnabled(PaymentError):
    status = 503
    code = "PROVIDER_NOT_ENABLED"
    default_message = "Payment provider not enabled"

    def __init__(self, *, current_provider: str, requested_provider: str):
        self.current_provider = current_provider
        self.requested_provider = requested_provider
        super().__init__(
            details=(
                f"The '{requested_provider}' payment provider is not enabled. "
                f"Current provider is '{current_provider}'."
            ),
            extra={
                "currentProvider": current_provider,
                "requestedProvider": requested_provider,
            },
        )
