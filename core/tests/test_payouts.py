from decimal import Decimal
from unittest.mock import patch

from django.test import override_settings

from core.models import CustomUser, PayoutRecord, Task
from core.services.errors import Forbidden, HelperNotOnboarded, PayoutFailed, PreconditionError
from core.services.payouts import create_payout

from .base import PaymentTestCase


PAYPAL_BATCH_OK = {'success': True, 'batch_id': 'BATCH1', 'batch_status': 'PENDING', 'raw': {}}


@override_settings(PAYMENT_PROVIDER='paypal', PAYPAL_ENV='sandbox')
class PayPalPayoutTests(PaymentTestCase):

    @patch('core.services.paypal.create_payout', return_value=PAYPAL_BATCH_OK)
    def test_helper_without_email_gets_no_record(self, paypal_payout):
        self.helper.email = ''
        self.helper.save()

        with self.assertRaises(HelperNotOnboarded) as ctx:
            create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00'})

        body = ctx.exception.as_response_body()
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(body['error'], 'Helper has not set up PayPal email')
        self.assertIn('PayPal email', body['details'])
        paypal_payout.assert_not_called()
        self.assertFalse(PayoutRecord.objects.exists())

    @patch('core.services.paypal.create_payout', return_value=PAYPAL_BATCH_OK)
    def test_success_persists_record_and_task(self, paypal_payout):
        self.set_helper_profile(paypal_email='hugo@paypal.test')

        result = create_payout(self.requester, {
            'taskId': self.task.pk, 'amount': '45.00', 'idempotencyKey': 'task-1-payout',
        })

        self.assertEqual(paypal_payout.call_args.kwargs['receiver_email'], 'hugo@paypal.test')
        self.assertEqual(paypal_payout.call_args.kwargs['idempotency_key'], 'task-1-payout')
        self.assertEqual(result['payoutId'], 'BATCH1')
        self.assertTrue(result['simulated'])

        record = PayoutRecord.objects.get()
        self.assertEqual(record.status, 'processing')
        self.assertEqual(record.amount, Decimal('45.00'))
        self.assertEqual(record.provider_payout_id, 'BATCH1')
        self.assertEqual(record.recipient, 'paypal:hugo@paypal.test')

        self.task.refresh_from_db()
        self.assertEqual(self.task.payout_id, 'BATCH1')
        self.assertEqual(self.task.payout_status, 'simulated')

    @override_settings(PAYPAL_ENV='production')
    @patch('core.services.paypal.create_payout', return_value=PAYPAL_BATCH_OK)
    def test_production_task_status_is_processing(self, paypal_payout):
        self.set_helper_profile(paypal_email='hugo@paypal.test')
        create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00'})
        self.task.refresh_from_db()
        self.assertEqual(self.task.payout_status, 'processing')

    @patch('core.services.paypal.create_payout', return_value=PAYPAL_BATCH_OK)
    def test_same_idempotency_key_does_not_pay_twice(self, paypal_payout):
        self.set_helper_profile(paypal_email='hugo@paypal.test')
        payload = {'taskId': self.task.pk, 'amount': '45.00', 'idempotencyKey': 'key-1'}

        first = create_payout(self.requester, payload)
        second = create_payout(self.requester, payload)

        self.assertEqual(paypal_payout.call_count, 1)
        self.assertEqual(PayoutRecord.objects.count(), 1)
        self.assertEqual(second['payoutId'], first['payoutId'])
        self.assertTrue(second['idempotent'])
        self.assertEqual(second['simulated'], first['simulated'])
        self.assertEqual(second['batchStatus'], first['batchStatus'])
        self.assertEqual(second['status'], first['status'])

    @patch('core.services.paypal.create_payout', return_value=PAYPAL_BATCH_OK)
    def test_key_from_another_task_is_a_conflict(self, paypal_payout):
        self.set_helper_profile(paypal_email='hugo@paypal.test')
        create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00', 'idempotencyKey': 'k1'})

        other_requester = CustomUser.objects.create_user(
            username='other', email='other@example.com', password='pass12345',
        )
        other_task = Task.objects.create(
            title='Paint fence', budget=Decimal('80.00'),
            created_by=other_requester, assigned_to=self.helper,
        )

        with self.assertRaises(PreconditionError) as ctx:
            create_payout(other_requester, {'taskId': other_task.pk, 'amount': '72.00', 'idempotencyKey': 'k1'})

        self.assertEqual(ctx.exception.status, 409)
        self.assertEqual(ctx.exception.code, 'IDEMPOTENCY_KEY_CONFLICT')
        self.assertNotIn('BATCH1', str(ctx.exception.as_response_body()))
        self.assertEqual(paypal_payout.call_count, 1)
        self.assertFalse(PayoutRecord.objects.filter(task=other_task).exists())

    @patch('core.services.paypal.create_payout', return_value=PAYPAL_BATCH_OK)
    def test_key_lookup_needs_authorization(self, paypal_payout):
        self.set_helper_profile(paypal_email='hugo@paypal.test')
        create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00', 'idempotencyKey': 'k1'})

        with self.assertRaises(Forbidden):
            create_payout(self.helper, {'taskId': self.task.pk, 'amount': '45.00', 'idempotencyKey': 'k1'})

    @patch('core.services.paypal.create_payout')
    def test_denied_batch(self, paypal_payout):
        self.set_helper_profile(paypal_email='hugo@paypal.test')
        paypal_payout.return_value = {'success': False, 'batch_id': 'BATCH9', 'batch_status': 'DENIED', 'raw': {}}

        with self.assertRaises(PayoutFailed) as ctx:
            create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00'})

        self.assertEqual(ctx.exception.as_response_body()['details'], 'Batch BATCH9')
        self.assertFalse(PayoutRecord.objects.exists())

    @patch('core.services.paypal.create_payout', return_value=PAYPAL_BATCH_OK)
    def test_explicit_email_wins(self, paypal_payout):
        self.set_helper_profile(paypal_email='hugo@paypal.test')
        create_payout(self.requester, {
            'taskId': self.task.pk, 'amount': '45.00', 'paypalEmail': 'other@paypal.test',
        })
        self.assertEqual(paypal_payout.call_args.kwargs['receiver_email'], 'other@paypal.test')


@override_settings(PAYMENT_PROVIDER='airwallex', AIRWALLEX_ENVIRONMENT='demo')
class AirwallexPayoutTests(PaymentTestCase):

    @patch('core.services.airwallex.create_transfer')
    def test_simulated_payout_skips_provider(self, create_transfer):
        result = create_payout(self.requester, {
            'taskId': self.task.pk, 'amount': '45.00', 'simulatePayout': True,
        })

        create_transfer.assert_not_called()
        self.assertTrue(result['simulated'])
        self.assertTrue(result['payoutId'].startswith('sim_payout_'))
        self.task.refresh_from_db()
        self.assertEqual(self.task.payout_status, 'simulated')
        self.assertFalse(PayoutRecord.objects.exists())

    @patch('core.services.airwallex.create_transfer')
    def test_transfer_uses_idempotency_key(self, create_transfer):
        self.set_helper_profile(iban='PT50000201231234567890154')
        create_transfer.return_value = {'id': 'tr_1', 'status': 'PROCESSING', 'raw': {}}

        result = create_payout(self.requester, {
            'taskId': self.task.pk, 'amount': '45.00', 'currency': 'eur', 'idempotencyKey': 'pay-1',
        })

        kwargs = create_transfer.call_args.kwargs
        self.assertEqual(kwargs['request_id'], 'pay-1')
        self.assertEqual(kwargs['amount'], Decimal('45.00'))
        self.assertEqual(kwargs['reference'], f'payout-{self.task.pk}')
        self.assertEqual(kwargs['beneficiary']['bank_details']['iban'], 'PT50000201231234567890154')
        self.assertEqual(kwargs['beneficiary']['bank_details']['account_name'], 'Hugo Helper')

        self.assertEqual(result['status'], 'processing')
        record = PayoutRecord.objects.get()
        self.assertEqual(record.idempotency_key, 'pay-1')
        self.assertEqual(record.provider_payout_id, 'tr_1')
        self.task.refresh_from_db()
        self.assertEqual(self.task.payout_id, 'tr_1')
        self.assertEqual(self.task.payout_status, 'processing')

    @patch('core.services.airwallex.create_transfer')
    def test_invalid_iban(self, create_transfer):
        with self.assertRaises(PreconditionError) as ctx:
            create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00', 'iban': 'PT50.0002'})
        self.assertEqual(ctx.exception.code, 'INVALID_IBAN')
        create_transfer.assert_not_called()

    def test_helper_without_iban(self):
        with self.assertRaises(HelperNotOnboarded):
            create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00'})


class PayoutPreconditionTests(PaymentTestCase):

    @override_settings(PAYMENT_PROVIDER='stripe')
    def test_stripe_pays_out_automatically(self):
        result = create_payout(self.requester, {'taskId': self.task.pk, 'amount': '45.00'})
        self.assertTrue(result['success'])
        self.assertIsNone(result['payoutId'])
        self.assertFalse(PayoutRecord.objects.exists())

    def test_amount_must_be_positive(self):
        for amount in ('0', '-5', 'abc', None):
            with self.assertRaises(PreconditionError) as ctx:
                create_payout(self.requester, {'taskId': self.task.pk, 'amount': amount})
            self.assertEqual(ctx.exception.code, 'INVALID_AMOUNT')

    def test_task_or_helper_required(self):
        with self.assertRaises(PreconditionError):
            create_payout(self.requester, {'amount': '10.00'})

    def test_other_users_cannot_release_payout(self):
        with self.assertRaises(Forbidden):
            create_payout(self.helper, {'taskId': self.task.pk, 'amount': '45.00'})

    @override_settings(PAYMENT_PROVIDER='stripe')
    def test_admin_can_pay_helper_directly(self):
        result = create_payout(self.admin, {'helperId': self.helper.pk, 'amount': '10.00'})
        self.assertTrue(result['success'])

    def test_helper_only_payout_needs_admin(self):
        with self.assertRaises(Forbidden):
            create_payout(self.requester, {'helperId': self.helper.pk, 'amount': '10.00'})

    def test_task_without_helper(self):
        Task.objects.filter(pk=self.task.pk).update(assigned_to=None)
        with self.assertRaises(PreconditionError) as ctx:
            create_payout(self.requester, {'taskId': self.task.pk, 'amount': '10.00'})
        self.assertEqual(ctx.exception.code, 'NO_ASSIGNED_HELPER')
