from decimal import Decimal

from core.models import PayoutRecord, Task
from core.services.errors import InvalidTransition
from core.services.state_machine import (
    apply_payment_status,
    apply_payout_status,
    can_transition_payment,
    can_transition_payout,
    conflicting_payment_ref,
)

from .base import PaymentTestCase


class TransitionTableTests(PaymentTestCase):

    def test_payment_transitions(self):
        self.assertTrue(can_transition_payment('none', 'pending'))
        self.assertTrue(can_transition_payment('none', 'paid'))
        self.assertTrue(can_transition_payment('pending', 'failed'))
        self.assertTrue(can_transition_payment('failed', 'pending'))
        self.assertTrue(can_transition_payment('paid', 'refunded'))
        self.assertFalse(can_transition_payment('paid', 'pending'))
        self.assertFalse(can_transition_payment('paid', 'failed'))
        self.assertFalse(can_transition_payment('refunded', 'paid'))

    def test_payout_transitions(self):
        self.assertTrue(can_transition_payout('none', 'processing'))
        self.assertTrue(can_transition_payout('processing', 'succeeded'))
        self.assertTrue(can_transition_payout('simulated', 'succeeded'))
        self.assertFalse(can_transition_payout('succeeded', 'failed'))
        self.assertFalse(can_transition_payout('processing', 'pending'))


class ApplyPaymentStatusTests(PaymentTestCase):

    def test_moves_status_and_records_reference(self):
        changed = apply_payment_status('paid', task_id=self.task.pk, payment_ref='int_1', provider='airwallex')
        self.assertTrue(changed)
        self.task.refresh_from_db()
        self.assertEqual(self.task.payment_status, 'paid')
        self.assertEqual(self.task.payment_intent_id, 'int_1')
        self.assertEqual(self.task.payment_provider, 'airwallex')

    def test_finds_task_by_reference(self):
        Task.objects.filter(pk=self.task.pk).update(payment_status='pending', payment_intent_id='cs_1')
        self.assertTrue(apply_payment_status('paid', payment_ref='cs_1'))
        self.task.refresh_from_db()
        self.assertEqual(self.task.payment_status, 'paid')

    def test_replay_is_a_noop(self):
        apply_payment_status('paid', task_id=self.task.pk, payment_ref='int_1')
        self.task.refresh_from_db()
        updated_at = self.task.updated_at

        self.assertFalse(apply_payment_status('paid', task_id=self.task.pk, payment_ref='int_1'))
        self.task.refresh_from_db()
        self.assertEqual(self.task.payment_status, 'paid')
        self.assertEqual(self.task.updated_at, updated_at)

    def test_late_failure_does_not_undo_paid(self):
        apply_payment_status('paid', task_id=self.task.pk)
        with self.assertLogs('core.services.state_machine', level='WARNING'):
            self.assertFalse(apply_payment_status('failed', task_id=self.task.pk))
        self.task.refresh_from_db()
        self.assertEqual(self.task.payment_status, 'paid')

    def test_strict_mode_raises(self):
        apply_payment_status('paid', task_id=self.task.pk)
        with self.assertRaises(InvalidTransition):
            apply_payment_status('pending', task_id=self.task.pk, strict=True)

    def test_second_settled_charge_is_reported(self):
        apply_payment_status('paid', task_id=self.task.pk, payment_ref='int_A')

        with self.assertLogs('core.services.state_machine', level='ERROR') as logs:
            changed = apply_payment_status('paid', task_id=self.task.pk, payment_ref='int_B')

        self.assertFalse(changed)
        self.assertIn('double charge', logs.output[0])
        self.assertIn('int_B', logs.output[0])
        self.task.refresh_from_db()
        self.assertEqual(self.task.payment_intent_id, 'int_A')
        self.assertEqual(conflicting_payment_ref(task_id=self.task.pk, payment_ref='int_B'), 'int_A')
        self.assertIsNone(conflicting_payment_ref(task_id=self.task.pk, payment_ref='int_A'))

    def test_unknown_task_is_ignored(self):
        with self.assertLogs('core.services.state_machine', level='WARNING'):
            self.assertFalse(apply_payment_status('paid', task_id=999999, payment_ref='missing'))


class ApplyPayoutStatusTests(PaymentTestCase):

    def setUp(self):
        super().setUp()
        self.record = PayoutRecord.objects.create(
            task=self.task,
            helper=self.helper,
            amount=Decimal('45.00'),
            currency='EUR',
            status='processing',
            provider='paypal',
            provider_payout_id='BATCH1',
        )
        Task.objects.filter(pk=self.task.pk).update(payout_id='BATCH1', payout_status='processing')

    def test_success_updates_record_and_task_together(self):
        self.assertTrue(apply_payout_status('succeeded', payout_ref='BATCH1'))

        self.record.refresh_from_db()
        self.task.refresh_from_db()
        self.assertEqual(self.record.status, 'succeeded')
        self.assertIsNotNone(self.record.completed_at)
        self.assertEqual(self.task.payout_status, 'succeeded')

    def test_replay_leaves_both_unchanged(self):
        apply_payout_status('succeeded', payout_ref='BATCH1')
        self.record.refresh_from_db()
        completed_at = self.record.completed_at

        self.assertFalse(apply_payout_status('succeeded', payout_ref='BATCH1'))
        self.record.refresh_from_db()
        self.task.refresh_from_db()
        self.assertEqual(self.record.status, 'succeeded')
        self.assertEqual(self.record.completed_at, completed_at)
        self.assertEqual(self.task.payout_status, 'succeeded')

    def test_failure_keeps_reason(self):
        apply_payout_status('failed', payout_ref='BATCH1', failure_reason='Receiver unregistered')
        self.record.refresh_from_db()
        self.assertEqual(self.record.status, 'failed')
        self.assertEqual(self.record.error_message, 'Receiver unregistered')

    def test_succeeded_is_terminal(self):
        apply_payout_status('succeeded', payout_ref='BATCH1')
        with self.assertLogs('core.services.state_machine', level='WARNING'):
            apply_payout_status('failed', payout_ref='BATCH1')
        self.record.refresh_from_db()
        self.assertEqual(self.record.status, 'succeeded')

    def test_task_without_record(self):
        Task.objects.filter(pk=self.task.pk).update(payout_id='sim_payout_1', payout_status='simulated')
        self.assertTrue(apply_payout_status('succeeded', payout_ref='sim_payout_1'))
        self.task.refresh_from_db()
        self.assertEqual(self.task.payout_status, 'succeeded')
