from django.test import SimpleTestCase, override_settings

from core.services.errors import ProviderNotEnabled
from core.utils.payment_provider import (
    active_provider,
    is_enabled,
    not_enabled_error,
    provider_config,
    require_enabled,
)


class ProviderSelectorTests(SimpleTestCase):

    @override_settings(PAYMENT_PROVIDER='')
    def test_defaults_to_airwallex(self):
        self.assertEqual(active_provider(), 'airwallex')

    @override_settings(PAYMENT_PROVIDER=' Stripe ')
    def test_value_is_normalized(self):
        self.assertEqual(active_provider(), 'stripe')
        self.assertTrue(is_enabled('STRIPE'))

    @override_settings(PAYMENT_PROVIDER='adyen')
    def test_unknown_value_falls_back(self):
        with self.assertLogs('core.utils.payment_provider', level='WARNING'):
            self.assertEqual(active_provider(), 'airwallex')

    @override_settings(PAYMENT_PROVIDER='paypal')
    def test_exactly_one_flag_is_set(self):
        config = provider_config()
        self.assertEqual(config['provider'], 'paypal')
        self.assertTrue(config['isPayPalEnabled'])
        self.assertFalse(config['isStripeEnabled'])
        self.assertFalse(config['isAirwallexEnabled'])
        self.assertEqual(config['message'], "Payment provider is set to 'paypal'")


class ProviderGateTests(SimpleTestCase):

    @override_settings(PAYMENT_PROVIDER='airwallex')
    def test_active_provider_passes(self):
        self.assertIsNone(not_enabled_error('airwallex'))
        require_enabled('airwallex')

    @override_settings(PAYMENT_PROVIDER='stripe')
    def test_inactive_provider_is_rejected_with_503(self):
        with self.assertRaises(ProviderNotEnabled) as ctx:
            require_enabled('airwallex')

        err = ctx.exception
        self.assertEqual(err.status, 503)
        body = err.as_response_body()
        self.assertEqual(body['error'], 'Payment provider not enabled')
        self.assertEqual(body['currentProvider'], 'stripe')
        self.assertEqual(body['requestedProvider'], 'airwallex')
        self.assertIn("'airwallex'", body['details'])
