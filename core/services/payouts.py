# core/services/payouts.py

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.utils import timezone

from core.constants import PROVIDER_AIRWALLEX, PROVIDER_PAYPAL, PROVIDER_STRIPE
from core.models import PayoutRecord, Task
from core.services import airwallex, paypal
from core.services.errors import (
    Forbidden,
    HelperNotOnboarded,
    NotFound,
    PayoutFailed,
    PreconditionError,
)
from core.services.onboarding import get_profile
from core.services.state_machine import apply_payout_status, can_transition_payout
from core.utils.iban import clean_iban, validate_iban
from core.utils.money import normalize_currency, parse_amount, quantize_money
from core.utils.payment_provider import active_provider

logger = logging.getLogger(__name__)

User = get_user_model()


def _now_ms() -> int:
    return int(timezone.now().timestamp() * 1000)


def _record_result(record: PayoutRecord) -> Dict[str, Any]:
    result = {
        "success": record.status != "failed",
        "payoutId": record.provider_payout_id or None,
        "amount": str(record.amount),
        "currency": record.currency,
        "status": record.status,
        "simulated": record.simulated,
        "provider": record.provider,
        "idempotent": True,
    }
    if record.provider == PROVIDER_PAYPAL:
        result["batchStatus"] = record.provider_status or None
    return result


def _resolve_task_and_helper(user, task_id, helper_id):
    task = None
    helper = None

    if task_id:
        task = Task.objects.select_related("assigned_to", "created_by").filter(pk=task_id).first() \
            if str(task_id).isdigit() else None
        if task is None:
            raise NotFound("Task not found", code="TASK_NOT_FOUND")
        if task.created_by_id != user.pk and not user.is_platform_admin:
            raise Forbidden("Only the task owner can release the payout", code="NOT_TASK_OWNER")

    if helper_id:
        helper = User.objects.filter(pk=helper_id).first() if str(helper_id).isdigit() else None
        if helper is None:
            raise NotFound("Helper not found", code="HELPER_NOT_FOUND")
        if task is None and not user.is_platform_admin:
            raise Forbidden("Only admins can pay out without a task")
    elif task is not None:
        helper = task.assigned_to

    if helper is None:
        raise PreconditionError("Task has no assigned helper", code="NO_ASSIGNED_HELPER")

    return task, helper


def _set_task_payout(task: Optional[Task], payout_ref: str, target: str) -> None:
    """Attach a fresh payout reference to the task, honouring the payout transitions."""
    if task is None:
        return
    with transaction.atomic():
        locked = Task.objects.select_for_update().get(pk=task.pk)
        if locked.payout_status != target and not can_transition_payout(locked.payout_status, target):
            logger.warning(
                f"Task {locked.pk} payout_status {locked.payout_status} -> {target} not allowed, keeping it"
            )
            return
        locked.payout_id = payout_ref or locked.payout_id
        locked.payout_status = target
        locked.save(update_fields=["payout_id", "payout_status", "updated_at"])
    logger.info(f"Task {task.pk} payout_status -> {target} ({payout_ref})")


def _check_same_payout(record: PayoutRecord, task: Optional[Task], helper) -> None:
    """A reused idempotency key must belong to the same task and helper."""
    if record.task_id != (task.pk if task else None) or record.helper_id != helper.pk:
        logger.warning(
            f"Idempotency key {record.idempotency_key} of payout #{record.pk} reused for "
            f"task {task.pk if task else None} / helper {helper.pk}"
        )
        raise PreconditionError(
            "Idempotency key already used for a different payout",
            code="IDEMPOTENCY_KEY_CONFLICT",
            status=409,
        )


def _save_record(**fields) -> PayoutRecord:
    try:
        with transaction.atomic():
            return PayoutRecord.objects.create(**fields)
    except IntegrityError:
        # A concurrent retry with the same key got there first
        key = fields.get("idempotency_key")
        existing = PayoutRecord.objects.filter(idempotency_key=key).first() if key else None
        if existing is None:
            raise
        logger.warning(f"Payout record for idempotency key {key} already exists (#{existing.pk})")
        _check_same_payout(existing, fields.get("task"), fields["helper"])
        return existing


# =============================================================================
# CREATE PAYOUT
# =============================================================================

def create_payout(user, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Send the helper's share for a task (or an explicit helper) through the active provider.

    ``idempotencyKey`` is checked against stored PayoutRecords of the same
    task and helper before any provider call and forwarded to the provider's
    own idempotency mechanism. A key already used for another payout is a 409.
    """
    provider = active_provider()

    task_id = data.get("taskId")
    helper_id = data.get("helperId")
    if not task_id and not helper_id:
        raise PreconditionError("taskId or helperId is required")

    amount = parse_amount(data.get("amount"))
    if amount is None or amount <= 0:
        raise PreconditionError("Amount is required and must be greater than 0", code="INVALID_AMOUNT")

    currency = normalize_currency(data.get("currency"), getattr(settings, "PAYMENT_CURRENCY", "EUR"))
    amount = quantize_money(amount, currency)
    idempotency_key = (data.get("idempotencyKey") or "").strip() or None

    task, helper = _resolve_task_and_helper(user, task_id, helper_id)

    if idempotency_key:
        existing = PayoutRecord.objects.filter(idempotency_key=idempotency_key).first()
        if existing is not None:
            _check_same_payout(existing, task, helper)
            logger.info(f"Payout for idempotency key {idempotency_key} already created (#{existing.pk})")
            return _record_result(existing)

    if provider == PROVIDER_STRIPE:
        # Destination charges settle to the connected account on their own
        return {
            "success": True,
            "payoutId": None,
            "provider": provider,
            "message": "Payout will be processed automatically via the payment provider",
        }

    if provider == PROVIDER_PAYPAL:
        return _paypal_payout(task, helper, amount, currency, idempotency_key, data)

    return _airwallex_payout(task, helper, amount, currency, idempotency_key, data)


def _paypal_payout(task, helper, amount: Decimal, currency: str, idempotency_key, data) -> Dict[str, Any]:
    profile = get_profile(helper)
    email = (
        (data.get("paypalEmail") or data.get("recipientEmail") or "").strip()
        or (profile.paypal_email if profile else "")
        or (helper.email or "")
    )
    if not email:
        raise HelperNotOnboarded(
            "Helper has not set up PayPal email",
            details="The helper needs to add their PayPal email to their profile to receive payouts.",
        )

    result = paypal.create_payout(
        receiver_email=email,
        amount=amount,
        currency=currency,
        task_id=task.pk if task else None,
        idempotency_key=idempotency_key,
    )
    if not result["success"]:
        logger.error(f"PayPal payout batch {result['batch_id']} rejected: {result['batch_status']}")
        raise PayoutFailed(
            f"PayPal payout failed: {result['batch_status'] or 'UNKNOWN'}",
            details=f"Batch {result['batch_id']}",
        )

    record = _save_record(
        task=task,
        helper=helper,
        amount=amount,
        currency=currency,
        status="processing",
        provider=PROVIDER_PAYPAL,
        provider_payout_id=result["batch_id"],
        provider_status=result["batch_status"] or "",
        simulated=not paypal.is_production(),
        idempotency_key=idempotency_key,
        recipient=f"paypal:{email}",
    )

    # Sandbox batches never settle
    task_status = "simulated" if record.simulated else "processing"
    _set_task_payout(task, result["batch_id"], task_status)

    logger.info(f"PayPal payout #{record.pk} batch {result['batch_id']} for helper {helper.pk}")
    return {
        "success": True,
        "payoutId": result["batch_id"],
        "batchStatus": result["batch_status"],
        "amount": str(amount),
        "currency": currency,
        "status": "processing",
        "simulated": task_status == "simulated",
        "provider": PROVIDER_PAYPAL,
    }


def _airwallex_payout(task, helper, amount: Decimal, currency: str, idempotency_key, data) -> Dict[str, Any]:
    if data.get("simulatePayout") and not airwallex.is_production():
        payout_id = f"sim_payout_{_now_ms()}"
        _set_task_payout(task, payout_id, "simulated")
        logger.info(f"Simulated payout {payout_id} for helper {helper.pk}")
        return {
            "success": True,
            "payoutId": payout_id,
            "amount": str(amount),
            "currency": currency,
            "status": "simulated",
            "simulated": True,
            "provider": PROVIDER_AIRWALLEX,
        }

    profile = get_profile(helper)
    iban = clean_iban(data.get("iban") or (profile.iban if profile else ""))
    if not iban:
        raise HelperNotOnboarded(
            "Helper has not set up their IBAN",
            details="The helper needs to add their IBAN to their profile to receive payouts.",
        )
    if not validate_iban(iban):
        raise PreconditionError(
            "Invalid IBAN format",
            code="INVALID_IBAN",
            details="IBAN must be a valid format (15-34 characters, no dots or spaces)",
        )

    holder = (
        (data.get("accountHolderName") or "").strip()
        or helper.get_full_name().strip()
        or helper.username
    )
    request_id = idempotency_key or f"payout_{_now_ms()}"

    transfer = airwallex.create_transfer(
        amount=amount,
        currency=currency,
        beneficiary=airwallex.build_beneficiary(iban=iban, account_holder_name=holder, currency=currency),
        request_id=request_id,
        reference=f"payout-{task.pk}" if task else f"payout-helper-{helper.pk}",
        metadata={"task_id": str(task.pk)} if task else {"helper_id": str(helper.pk)},
    )
    status = airwallex.map_transfer_status(transfer["status"])

    record = _save_record(
        task=task,
        helper=helper,
        amount=amount,
        currency=currency,
        status="processing",
        provider=PROVIDER_AIRWALLEX,
        provider_payout_id=transfer["id"] or "",
        provider_status=transfer["status"] or "",
        idempotency_key=idempotency_key,
        recipient=f"iban:{iban[-4:]}",
    )
    _set_task_payout(task, transfer["id"] or "", "processing")
    if status in ("succeeded", "failed"):
        apply_payout_status(status, payout_ref=transfer["id"], task_id=task.pk if task else None)

    logger.info(f"Airwallex transfer {transfer['id']} ({status}) payout #{record.pk} for helper {helper.pk}")
    return {
        "success": status != "failed",
        "payoutId": transfer["id"],
        "amount": str(amount),
        "currency": currency,
        "status": status,
        "simulated": False,
        "provider": PROVIDER_AIRWALLEX,
    }
