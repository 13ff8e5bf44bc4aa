from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import override_settings

from core.models import PayoutRecord, Task
from core.services.errors import NotSupported, ProviderTimeout
from core.services.status import payment_status, payout_status, reconcile_open_payouts
from core.tasks import reconcile_open_payouts_task

from .base import PaymentTestCase


class PaymentStatusTests(PaymentTestCase):

    @override_settings(PAYMENT_PROVIDER='stripe')
    def test_stripe_is_webhook_driven(self):
        with self.assertRaises(NotSupported) as ctx:
            payment_status('cs_1')
        self.assertEqual(ctx.exception.status, 501)

    @override_settings(PAYMENT_PROVIDER='airwallex')
    @patch('core.services.airwallex.get_payment_intent')
    def test_airwallex_lookup_is_read_only(self, get_intent):
        get_intent.return_value = {
            'id': 'int_1', 'status': 'SUCCEEDED', 'amount': 52.0, 'currency': 'EUR',
            'merchant_order_id': 'payment-1-1', 'metadata': {'task_id': str(self.task.pk)}, 'raw': {},
        }
        Task.objects.filter(pk=self.task.pk).update(payment_intent_id='int_1')

        result = payment_status('int_1')

        self.assertEqual(result['status'], 'paid')
        self.assertEqual(result['currency'], 'EUR')
        self.task.refresh_from_db()
        self.assertEqual(self.task.payment_status, 'none')

    @override_settings(PAYMENT_PROVIDER='paypal')
    @patch('core.services.paypal.get_order')
    def test_paypal_order_lookup(self, get_order):
        get_order.return_value = {
            'id': 'ORDER1', 'status': 'APPROVED', 'amount': '52.00', 'currency': 'EUR',
            'custom_id': str(self.task.pk), 'raw': {},
        }
        self.assertEqual(payment_status('ORDER1')['status'], 'pending')


class PayoutStatusTests(PaymentTestCase):

    def setUp(self):
        super().setUp()
        self.record = PayoutRecord.objects.create(
            task=self.task, helper=self.helper, amount=Decimal('45.00'),
            status='processing', provider='paypal', provider_payout_id='BATCH1',
        )
        Task.objects.filter(pk=self.task.pk).update(payout_id='BATCH1', payout_status='processing')

    @override_settings(PAYMENT_PROVIDER='stripe')
    def test_stripe_not_supported(self):
        with self.assertRaises(NotSupported):
            payout_status('po_1')

    @override_settings(PAYMENT_PROVIDER='paypal')
    @patch('core.services.paypal.get_payout_batch')
    def test_terminal_status_is_persisted(self, get_batch):
        get_batch.return_value = {
            'id': 'BATCH1', 'batch_status': 'SUCCESS', 'amount': '45.00', 'currency': 'EUR', 'raw': {},
        }

        result = payout_status('BATCH1')

        self.assertEqual(result['status'], 'succeeded')
        self.assertEqual(result['batchStatus'], 'SUCCESS')
        self.assertTrue(result['updated'])
        self.record.refresh_from_db()
        self.task.refresh_from_db()
        self.assertEqual(self.record.status, 'succeeded')
        self.assertEqual(self.task.payout_status, 'succeeded')

        # Polling again agrees with the stored state
        self.assertFalse(payout_status('BATCH1')['updated'])

    @override_settings(PAYMENT_PROVIDER='paypal')
    @patch('core.services.paypal.get_payout_batch')
    def test_open_status_leaves_records_alone(self, get_batch):
        get_batch.return_value = {
            'id': 'BATCH1', 'batch_status': 'PENDING', 'amount': '45.00', 'currency': 'EUR', 'raw': {},
        }
        result = payout_status('BATCH1')
        self.assertEqual(result['status'], 'processing')
        self.assertNotIn('updated', result)
        self.record.refresh_from_db()
        self.assertEqual(self.record.status, 'processing')

    @override_settings(PAYMENT_PROVIDER='airwallex')
    @patch('core.services.airwallex.get_transfer')
    def test_airwallex_failed_transfer(self, get_transfer):
        PayoutRecord.objects.filter(pk=self.record.pk).update(provider='airwallex', provider_payout_id='tr_1')
        Task.objects.filter(pk=self.task.pk).update(payout_id='tr_1')
        get_transfer.return_value = {
            'id': 'tr_1', 'status': 'FAILED', 'amount': Decimal('45.00'), 'currency': 'EUR', 'raw': {},
        }

        result = payout_status('tr_1')

        self.assertEqual(result['status'], 'failed')
        self.assertEqual(result['amount'], '45.00')
        self.record.refresh_from_db()
        self.assertEqual(self.record.status, 'failed')


@override_settings(PAYMENT_PROVIDER='paypal')
class ReconcileTests(PaymentTestCase):

    def setUp(self):
        super().setUp()
        for ref in ('BATCH1', 'BATCH2'):
            PayoutRecord.objects.create(
                task=self.task, helper=self.helper, amount=Decimal('10.00'),
                status='processing', provider='paypal', provider_payout_id=ref,
            )
        PayoutRecord.objects.create(
            task=self.task, helper=self.helper, amount=Decimal('10.00'),
            status='succeeded', provider='paypal', provider_payout_id='BATCH_DONE',
        )

    @patch('core.services.paypal.get_payout_batch')
    def test_polls_only_open_payouts(self, get_batch):
        get_batch.side_effect = lambda ref: {
            'id': ref, 'batch_status': 'SUCCESS' if ref == 'BATCH1' else 'PENDING',
            'amount': '10.00', 'currency': 'EUR', 'raw': {},
        }

        stats = reconcile_open_payouts()

        polled = sorted(call.args[0] for call in get_batch.call_args_list)
        self.assertEqual(polled, ['BATCH1', 'BATCH2'])
        self.assertEqual(stats, {'checked': 2, 'updated': 1, 'errors': 0})
        self.assertEqual(PayoutRecord.objects.get(provider_payout_id='BATCH1').status, 'succeeded')
        self.assertEqual(PayoutRecord.objects.get(provider_payout_id='BATCH2').status, 'processing')

    @patch('core.services.paypal.get_payout_batch', side_effect=ProviderTimeout())
    def test_provider_errors_are_counted(self, get_batch):
        with self.assertLogs('core.services.status', level='WARNING'):
            stats = reconcile_open_payouts()
        self.assertEqual(stats['errors'], 2)
        self.assertEqual(stats['updated'], 0)

    @patch('core.services.paypal.get_payout_batch')
    def test_celery_task_and_command(self, get_batch):
        get_batch.return_value = {
            'id': 'BATCH1', 'batch_status': 'PENDING', 'amount': '10.00', 'currency': 'EUR', 'raw': {},
        }

        stats = reconcile_open_payouts_task.apply().get()
        self.assertEqual(stats['checked'], 2)

        out = StringIO()
        call_command('reconcile_payouts', stdout=out)
        self.assertIn('checked=2', out.getvalue())
