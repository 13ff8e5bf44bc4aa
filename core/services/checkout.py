# core/services/checkout.py

"""
Requester-side payment flows: task checkout, standalone payments and
sandbox payment simulation.

Each function branches over all three providers in one place.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.constants import (
    DEFAULT_SERVICE_FEE,
    PROVIDER_AIRWALLEX,
    PROVIDER_PAYPAL,
    PROVIDER_STRIPE,
    SERVICE_FEE_SETTING_KEY,
)
from core.models import PlatformSetting, Task
from core.services import airwallex, payouts, paypal, stripe_connect
from core.services.errors import (
    Forbidden,
    HelperNotOnboarded,
    NotFound,
    NotSupported,
    PaymentError,
    PreconditionError,
    ProviderTransportError,
)
from core.services.onboarding import get_profile
from core.services.state_machine import apply_payment_status
from core.utils.money import (
    FeeBreakdown,
    compute_fee_breakdown,
    normalize_currency,
    parse_amount,
    to_minor_units,
)
from core.utils.payment_provider import active_provider

logger = logging.getLogger(__name__)


def _base_url() -> str:
    return (getattr(settings, "APP_BASE_URL", "") or "http://localhost:3000").rstrip("/")


def _now_ms() -> int:
    return int(timezone.now().timestamp() * 1000)


# =============================================================================
# FEES
# =============================================================================

def current_service_fee() -> Decimal:
    """Service fee charged on top of the budget; the settings store wins over the default."""
    raw = (
        PlatformSetting.objects
        .filter(key=SERVICE_FEE_SETTING_KEY)
        .values_list("value", flat=True)
        .first()
    )
    fee = parse_amount(raw)
    if fee is not None and fee >= 0:
        return fee

    if raw is not None:
        logger.warning(f"Ignoring invalid {SERVICE_FEE_SETTING_KEY} setting: {raw!r}")
    configured = parse_amount(getattr(settings, "PAYMENT_DEFAULT_SERVICE_FEE", None))
    return configured if configured is not None and configured >= 0 else DEFAULT_SERVICE_FEE


def fee_breakdown_for(task: Task, currency: str | None = None) -> FeeBreakdown:
    return compute_fee_breakdown(
        base_amount=task.budget,
        service_fee=current_service_fee(),
        currency=currency or getattr(settings, "PAYMENT_CURRENCY", "EUR"),
        commission_percent=parse_amount(getattr(settings, "PAYMENT_HELPER_COMMISSION_PERCENT", "10")) or Decimal("0"),
    )


# =============================================================================
# CREATE CHECKOUT
# =============================================================================

def _require_helper_credential(provider: str, helper) -> str:
    profile = get_profile(helper)

    if provider == PROVIDER_STRIPE:
        value = profile.stripe_account_id if profile else ""
        if not value:
            raise HelperNotOnboarded(
                "Helper has not set up payment account",
                details="The helper needs to complete their payment account setup before you can pay.",
            )
        return value

    if provider == PROVIDER_PAYPAL:
        value = profile.paypal_email if profile else ""
        if not value:
            raise HelperNotOnboarded(
                "Helper has not set up their PayPal email",
                details="The helper needs to add their PayPal email to their profile before you can pay.",
            )
        return value

    value = profile.iban if profile else ""
    if not value:
        raise HelperNotOnboarded(
            "Helper has not set up their IBAN",
            details="The helper needs to add their IBAN to their profile before you can pay.",
        )
    return value


def _check_task_preconditions(task: Task, user) -> None:
    if task.created_by_id != user.pk:
        raise Forbidden("Only the task owner can pay for this task", code="NOT_TASK_OWNER")
    if not task.assigned_to_id:
        raise PreconditionError("Task has no assigned helper", code="NO_ASSIGNED_HELPER")
    if task.payment_status == "paid":
        raise PreconditionError("Task is already paid", code="ALREADY_PAID")
    if task.payment_status == "pending" and task.payment_intent_id:
        raise PreconditionError(
            "A payment for this task is already in progress",
            code="PAYMENT_PENDING",
            details={"paymentIntentId": task.payment_intent_id},
        )
    if task.budget is None or task.budget <= 0:
        raise PreconditionError("Task budget must be a positive amount", code="INVALID_AMOUNT")


def create_checkout(
    user,
    task_id,
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> Dict[str, Any]:
    """
    Start paying for a task with the active provider.

    The task row stays locked from the precondition read to the single status
    write, so a concurrent second call sees the pending / paid status and fails
    instead of opening a second charge.

    Returns:
        {
            'id': str,
            'paymentIntentId': str,
            'amount': int,            # total charge, minor units
            'currency': str,
            'clientSecret': str,      # Airwallex only
            'redirectUrl': str,
            'breakdown': dict,
            'provider': str
        }
    """
    provider = active_provider()

    with transaction.atomic():
        try:
            task = Task.objects.select_for_update().get(pk=task_id)
        except (Task.DoesNotExist, ValueError, TypeError):
            raise NotFound("Task not found", code="TASK_NOT_FOUND")

        _check_task_preconditions(task, user)
        helper = task.assigned_to
        credential = _require_helper_credential(provider, helper)

        breakdown = fee_breakdown_for(task)
        amount_minor = breakdown.total_charge_minor
        success_url = return_url or f"{_base_url()}/tasks/{task.pk}?payment=success"
        cancel_url = cancel_url or f"{_base_url()}/tasks/{task.pk}?payment=cancelled"

        if provider == PROVIDER_STRIPE:
            stripe_connect.require_onboarded(credential)
            session = stripe_connect.create_checkout_session(
                task_id=task.pk,
                task_title=task.title,
                breakdown=breakdown,
                destination_account=credential,
                helper_id=helper.pk,
                requester_id=user.pk,
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=user.email or None,
                previous_session_id=task.payment_intent_id or None,
            )
            task.payment_status = "pending"
            task.payment_provider = provider
            task.payment_intent_id = session["id"]
            task.save(update_fields=["payment_status", "payment_provider", "payment_intent_id", "updated_at"])

            logger.info(f"Stripe checkout {session['id']} for task {task.pk}, total {breakdown.total_charge}")
            return {
                "id": session["id"],
                "paymentIntentId": session["id"],
                "amount": amount_minor,
                "currency": breakdown.currency,
                "redirectUrl": session["url"],
                "breakdown": breakdown.as_dict(),
                "provider": provider,
            }

        if provider == PROVIDER_PAYPAL:
            order = paypal.create_order(
                task_id=task.pk,
                amount=breakdown.total_charge,
                currency=breakdown.currency,
                return_url=success_url,
                cancel_url=cancel_url,
                description=task.title,
            )
            task.payment_status = "pending"
            task.payment_provider = provider
            task.payment_intent_id = order["id"]
            task.save(update_fields=["payment_status", "payment_provider", "payment_intent_id", "updated_at"])

            logger.info(f"PayPal order {order['id']} for task {task.pk}, total {breakdown.total_charge}")
            return {
                "id": order["id"],
                "paymentIntentId": order["id"],
                "amount": amount_minor,
                "currency": breakdown.currency,
                "redirectUrl": order["approval_url"],
                "breakdown": breakdown.as_dict(),
                "provider": provider,
            }

        # Airwallex: confirmation arrives by webhook, the task is not touched here
        merchant_order_id = f"payment-{task.pk}-{_now_ms()}"
        intent = airwallex.create_payment_intent(
            amount_minor=amount_minor,
            currency=breakdown.currency,
            merchant_order_id=merchant_order_id,
            return_url=success_url,
            metadata={
                "task_id": str(task.pk),
                "helper_id": str(helper.pk),
                "tasker_id": str(user.pk),
                **breakdown.as_metadata(),
            },
        )

    redirect_url = intent.get("next_action_url")
    if not redirect_url:
        redirect_url = f"/checkout/{intent['id']}?taskId={task.pk}&amount={amount_minor}"
        if intent.get("client_secret"):
            redirect_url += f"&clientSecret={intent['client_secret']}"

    logger.info(f"Airwallex intent {intent['id']} for task {task.pk}, total {breakdown.total_charge}")
    return {
        "id": intent["id"],
        "paymentIntentId": intent["id"],
        "amount": amount_minor,
        "currency": breakdown.currency,
        "clientSecret": intent.get("client_secret"),
        "redirectUrl": redirect_url,
        "merchantOrderId": merchant_order_id,
        "breakdown": breakdown.as_dict(),
        "provider": PROVIDER_AIRWALLEX,
    }


# =============================================================================
# STANDALONE PAYMENT
# =============================================================================

def create_payment(data: Dict[str, Any]) -> Dict[str, Any]:
    """Payment not tied to a task. Only intent-based providers support it."""
    provider = active_provider()

    if provider == PROVIDER_STRIPE:
        raise NotSupported(
            "Standalone payment not supported",
            code="USE_CREATE_CHECKOUT",
            details="The current payment provider requires task-based checkout. Use /api/payments/create-checkout with a taskId.",
        )
    if provider == PROVIDER_PAYPAL:
        raise NotSupported(
            "Standalone payment not supported",
            code="USE_CREATE_CHECKOUT",
            details="PayPal requires task-based checkout. Use /api/payments/create-checkout with a taskId.",
        )

    amount = parse_amount(data.get("amount"))
    if amount is None or amount <= 0:
        raise PreconditionError("Amount is required and must be greater than 0", code="INVALID_AMOUNT")

    currency = normalize_currency(data.get("currency"), getattr(settings, "PAYMENT_CURRENCY", "EUR"))
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None

    intent = airwallex.create_payment_intent(
        amount_minor=to_minor_units(amount, currency),
        currency=currency,
        merchant_order_id=data.get("merchant_order_id") or f"order_{_now_ms()}",
        return_url=data.get("return_url") or f"{_base_url()}/?payment=success",
        metadata=metadata,
        customer_id=data.get("customer_id") or None,
    )
    return {
        "id": intent["id"],
        "paymentIntentId": intent["id"],
        "amount": intent["amount_minor"],
        "currency": intent["currency"],
        "clientSecret": intent.get("client_secret"),
        "status": intent.get("status"),
        "redirectUrl": intent.get("next_action_url"),
        "provider": provider,
    }


def confirm_payment(data: Dict[str, Any]) -> Dict[str, Any]:
    """Confirm an Airwallex intent with payment method details (embedded checkout)."""
    intent_id = data.get("payment_intent_id") or data.get("paymentIntentId")
    if not intent_id:
        raise PreconditionError("payment_intent_id is required")
    payment_method = data.get("payment_method") if isinstance(data.get("payment_method"), dict) else None
    result = airwallex.confirm_payment_intent(intent_id, payment_method)
    return {
        "id": result["id"],
        "status": result["status"],
        "redirectUrl": result.get("next_action_url"),
    }


# =============================================================================
# SIMULATION (sandbox only)
# =============================================================================

def _is_sandbox(provider: str) -> bool:
    if provider == PROVIDER_PAYPAL:
        return not paypal.is_production()
    if provider == PROVIDER_AIRWALLEX:
        return not airwallex.is_production()
    return False


def _simulated_payout(user, task: Task, provider: str, intent_id: str | None) -> Dict[str, Any]:
    """Release the helper's share the way the real flow would after the charge settles."""
    breakdown = fee_breakdown_for(task)
    data = {
        "taskId": task.pk,
        "amount": breakdown.helper_amount,
        "currency": breakdown.currency,
        "idempotencyKey": f"simulate-{task.pk}-{intent_id or 'task'}",
    }
    if provider == PROVIDER_AIRWALLEX:
        profile = get_profile(task.assigned_to)
        if not (profile and profile.iban):
            return {
                "success": False,
                "amount": str(breakdown.helper_amount),
                "error": "Helper has not set up their IBAN",
            }
        data["simulatePayout"] = True

    try:
        return payouts.create_payout(user, data)
    except PaymentError as e:
        logger.warning(f"Simulated payout for task {task.pk} failed: {e.code} {e.message}")
        return {
            "success": False,
            "amount": str(breakdown.helper_amount),
            "error": e.message,
            "code": e.code,
        }


def simulate_payment(user, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Mark a sandbox payment as settled, as if the provider's webhook had arrived.
    Goes through the same state machine as real webhooks. When a taskId is
    given the helper payout is started too (simulated for Airwallex, a sandbox
    PayPal batch for PayPal); a failed payout is reported, not raised.
    """
    provider = active_provider()

    if provider == PROVIDER_STRIPE:
        raise NotSupported(
            "Simulation not supported",
            code="SIMULATE_NOT_SUPPORTED",
            details="The current payment provider uses hosted checkout. Use test card numbers in the checkout flow instead.",
        )

    if not _is_sandbox(provider):
        raise Forbidden("Payment simulation is disabled in production", code="SIMULATION_DISABLED")

    intent_id = data.get("intentId") or data.get("paymentIntentId")
    task_id: Optional[str] = data.get("taskId")
    if not intent_id and not task_id:
        raise PreconditionError("Missing intentId or taskId for simulation")

    if provider == PROVIDER_PAYPAL and intent_id:
        # The order may already be captured; simulation continues either way
        try:
            paypal.capture_order(intent_id)
        except ProviderTransportError as e:
            logger.warning(f"PayPal simulate: capture of {intent_id} skipped ({e.message})")

    changed = apply_payment_status("paid", task_id=task_id, payment_ref=intent_id, provider=provider)
    task = None
    if task_id:
        task = Task.objects.filter(pk=task_id).first() if str(task_id).isdigit() else None
    elif intent_id:
        task = Task.objects.filter(payment_intent_id=intent_id).first()

    if task is None:
        raise NotFound("Task not found", code="TASK_NOT_FOUND")

    result = {
        "taskId": task.pk,
        "status": task.payment_status,
        "changed": changed,
        "simulated": True,
        "message": f"Simulated payment for task {task.pk}",
    }
    if task_id and task.payment_status == "paid" and task.assigned_to_id:
        result["payout"] = _simulated_payout(user, task, provider, intent_id)
    return result
