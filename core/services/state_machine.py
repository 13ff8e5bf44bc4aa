# core/services/state_machine.py

"""
Task payment / payout lifecycle.

Every status write (webhooks, polling, simulation, admin) goes through
``apply_payment_status`` / ``apply_payout_status``: row lock, compare with the
current value, write only when the transition is allowed and changes
something. Replaying the same event is therefore a no-op.
"""

from __future__ import annotations

import logging
from typing import Optional

from django.db import transaction
from django.utils import timezone

from core.models import PayoutRecord, Task
from core.services.errors import InvalidTransition

logger = logging.getLogger(__name__)


PAYMENT_TRANSITIONS = {
    # Intent-based checkouts never write "pending", so none -> paid is allowed
    "none": {"pending", "paid", "failed"},
    "pending": {"paid", "failed"},
    "failed": {"pending", "paid"},
    "paid": {"refunded"},
    "refunded": set(),
}

PAYOUT_TRANSITIONS = {
    "none": {"pending", "processing", "simulated", "succeeded", "failed"},
    "pending": {"processing", "succeeded", "failed"},
    "processing": {"succeeded", "failed"},
    "simulated": {"succeeded", "failed"},
    "failed": {"pending", "processing", "simulated"},
    "succeeded": set(),
}


def can_transition_payment(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current or "none", set())


def can_transition_payout(current: str, target: str) -> bool:
    return target in PAYOUT_TRANSITIONS.get(current or "none", set())


def _as_pk(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _reject(kind: str, obj_label: str, current: str, target: str, strict: bool) -> bool:
    msg = f"{kind} transition {current} -> {target} not allowed for {obj_label}"
    if strict:
        raise InvalidTransition(details=msg)
    logger.warning(msg)
    return False


# =============================================================================
# PAYMENT STATUS
# =============================================================================

def apply_payment_status(
    target: str,
    *,
    task_id=None,
    payment_ref: str | None = None,
    provider: str | None = None,
    strict: bool = False,
) -> bool:
    """
    Move a task's payment_status to ``target``.

    The task is found by id, else by its stored payment reference. Returns
    True when something was written. With ``strict`` a disallowed transition
    raises InvalidTransition instead of being skipped.
    """
    pk = _as_pk(task_id)

    with transaction.atomic():
        qs = Task.objects.select_for_update()
        task = None
        if pk is not None:
            task = qs.filter(pk=pk).first()
        if task is None and payment_ref:
            task = qs.filter(payment_intent_id=payment_ref).first()

        if task is None:
            logger.warning(f"No task for payment event (task_id={task_id}, ref={payment_ref})")
            return False

        current = task.payment_status
        if current == target == "paid" and payment_ref and task.payment_intent_id \
                and payment_ref != task.payment_intent_id:
            logger.error(
                f"Possible double charge on task {task.pk}: {payment_ref} settled, "
                f"task already paid by {task.payment_intent_id}"
            )
            return False

        if current == target:
            # Already applied; only fill in missing tracking fields
            updates = []
            if payment_ref and not task.payment_intent_id:
                task.payment_intent_id = payment_ref
                updates.append("payment_intent_id")
            if provider and not task.payment_provider:
                task.payment_provider = provider
                updates.append("payment_provider")
            if updates:
                task.save(update_fields=updates + ["updated_at"])
            return False

        if not can_transition_payment(current, target):
            return _reject("Payment", f"task {task.pk}", current, target, strict)

        task.payment_status = target
        updates = ["payment_status", "updated_at"]
        if payment_ref and task.payment_intent_id != payment_ref and target in ("pending", "paid"):
            task.payment_intent_id = payment_ref
            updates.append("payment_intent_id")
        if provider and task.payment_provider != provider:
            task.payment_provider = provider
            updates.append("payment_provider")
        task.save(update_fields=updates)

    logger.info(f"Task {task.pk} payment_status {current} -> {target}")
    return True


def conflicting_payment_ref(*, task_id=None, payment_ref: str | None = None) -> Optional[str]:
    """
    The task's stored payment reference when the task is paid by a different
    charge than ``payment_ref``, else None.
    """
    pk = _as_pk(task_id)
    if pk is None or not payment_ref:
        return None
    stored = (
        Task.objects
        .filter(pk=pk, payment_status="paid")
        .exclude(payment_intent_id="")
        .values_list("payment_intent_id", flat=True)
        .first()
    )
    if stored and stored != payment_ref:
        return stored
    return None


# =============================================================================
# PAYOUT STATUS
# =============================================================================

def apply_payout_status(
    target: str,
    *,
    payout_ref: str | None = None,
    task_id=None,
    failure_reason: str = "",
    strict: bool = False,
) -> bool:
    """
    Move a payout (PayoutRecord and the linked task's payout_status) to ``target``
    in one transaction. Either side may be missing (e.g. simulated payouts
    have no record). Returns True when anything was written.
    """
    pk = _as_pk(task_id)

    with transaction.atomic():
        record = None
        if payout_ref:
            record = PayoutRecord.objects.select_for_update().filter(provider_payout_id=payout_ref).first()

        task_pk = record.task_id if record is not None and record.task_id else pk
        task = None
        if task_pk is not None:
            task = Task.objects.select_for_update().filter(pk=task_pk).first()
        if task is None and payout_ref:
            task = Task.objects.select_for_update().filter(payout_id=payout_ref).first()
        if record is None and task is not None and not payout_ref:
            record = (
                PayoutRecord.objects.select_for_update()
                .filter(task=task)
                .order_by("-created_at")
                .first()
            )

        if record is None and task is None:
            logger.warning(f"No payout/task for payout event (ref={payout_ref}, task_id={task_id})")
            return False

        changed = False

        if record is not None and record.status != target:
            if can_transition_payout(record.status, target):
                previous = record.status
                record.status = target
                updates = ["status", "updated_at"]
                if target == "succeeded":
                    record.completed_at = timezone.now()
                    record.error_message = ""
                    updates += ["completed_at", "error_message"]
                elif target == "failed":
                    record.error_message = failure_reason or "Payout failed"
                    updates.append("error_message")
                record.save(update_fields=updates)
                changed = True
                logger.info(f"Payout #{record.pk} status {previous} -> {target}")
            else:
                _reject("Payout", f"payout #{record.pk}", record.status, target, strict)

        if task is not None and task.payout_status != target:
            if can_transition_payout(task.payout_status, target):
                previous = task.payout_status
                task.payout_status = target
                updates = ["payout_status", "updated_at"]
                if payout_ref and not task.payout_id:
                    task.payout_id = payout_ref
                    updates.append("payout_id")
                task.save(update_fields=updates)
                changed = True
                logger.info(f"Task {task.pk} payout_status {previous} -> {target}")
            else:
                _reject("Payout", f"task {task.pk}", task.payout_status, target, strict)

    return changed
