from unittest.mock import patch

from django.test import override_settings

from core.models import PaymentProfile
from core.services import onboarding
from core.services.errors import NotSupported, PreconditionError

from .base import PaymentTestCase


@override_settings(PAYMENT_PROVIDER='airwallex', APP_BASE_URL='https://taskorilla.test')
class AirwallexOnboardingTests(PaymentTestCase):

    def test_status_without_iban(self):
        status = onboarding.helper_onboarding_status(self.helper)
        self.assertFalse(status['onboarded'])
        self.assertFalse(status['hasIban'])

    def test_saving_iban(self):
        result = onboarding.start_helper_onboarding(self.helper, {'iban': 'de89 3704 0044 0532 0130 00'})

        self.assertTrue(result['onboarded'])
        self.assertEqual(result['setupUrl'], 'https://taskorilla.test/profile/payouts')
        self.assertEqual(PaymentProfile.objects.get(user=self.helper).iban, 'DE89370400440532013000')
        self.assertNotIn('370400', result['iban'])

    def test_invalid_iban_is_rejected(self):
        with self.assertRaises(PreconditionError) as ctx:
            onboarding.start_helper_onboarding(self.helper, {'iban': 'DE89.3704'})
        self.assertEqual(ctx.exception.code, 'INVALID_IBAN')

    def test_dashboard_is_profile_page(self):
        result = onboarding.helper_dashboard(self.helper)
        self.assertEqual(result['dashboardUrl'], 'https://taskorilla.test/profile/payouts')

    @patch('core.services.airwallex.create_customer', return_value={'id': 'cus_1', 'raw': {}})
    def test_customer_is_created_once(self, create_customer):
        first = onboarding.create_customer(self.requester, {})
        second = onboarding.create_customer(self.requester, {})

        self.assertTrue(first['created'])
        self.assertFalse(second['created'])
        self.assertEqual(second['customerId'], 'cus_1')
        create_customer.assert_called_once_with(
            email='requester@example.com',
            first_name='Rita',
            last_name='Requester',
            merchant_customer_id=f'user_{self.requester.pk}',
        )

    def test_customer_needs_a_name(self):
        self.requester.last_name = ''
        self.requester.save()
        with self.assertRaises(PreconditionError):
            onboarding.create_customer(self.requester, {})


@override_settings(PAYMENT_PROVIDER='paypal')
class PayPalOnboardingTests(PaymentTestCase):

    def test_saving_email(self):
        result = onboarding.start_helper_onboarding(self.helper, {'paypal_email': 'hugo@paypal.test'})
        self.assertTrue(result['hasPaypalEmail'])
        self.assertEqual(PaymentProfile.objects.get(user=self.helper).paypal_email, 'hugo@paypal.test')

    def test_invalid_email(self):
        with self.assertRaises(PreconditionError) as ctx:
            onboarding.start_helper_onboarding(self.helper, {'paypal_email': 'not-an-email'})
        self.assertEqual(ctx.exception.code, 'INVALID_EMAIL')

    def test_customer_creation_not_supported(self):
        with self.assertRaises(NotSupported):
            onboarding.create_customer(self.requester, {})


@override_settings(PAYMENT_PROVIDER='stripe', APP_BASE_URL='https://taskorilla.test')
class StripeOnboardingTests(PaymentTestCase):

    @patch('core.services.stripe_connect.create_onboarding_link',
           return_value={'url': 'https://connect.stripe.test/setup', 'expires_at': 1700000000})
    @patch('core.services.stripe_connect.create_connected_account', return_value='acct_new')
    def test_account_is_created_and_stored(self, create_account, create_link):
        result = onboarding.start_helper_onboarding(self.helper, {})

        self.assertEqual(result['onboardingUrl'], 'https://connect.stripe.test/setup')
        self.assertEqual(PaymentProfile.objects.get(user=self.helper).stripe_account_id, 'acct_new')
        self.assertEqual(
            create_link.call_args.kwargs['return_url'],
            'https://taskorilla.test/profile/payouts?onboarding=complete',
        )

    @patch('core.services.stripe_connect.create_onboarding_link',
           return_value={'url': 'https://connect.stripe.test/setup', 'expires_at': None})
    @patch('core.services.stripe_connect.create_connected_account')
    def test_existing_account_is_reused(self, create_account, create_link):
        self.set_helper_profile(stripe_account_id='acct_1')
        onboarding.start_helper_onboarding(self.helper, {})
        create_account.assert_not_called()
        self.assertEqual(create_link.call_args.args[0], 'acct_1')

    def test_dashboard_without_account(self):
        with self.assertRaises(PreconditionError) as ctx:
            onboarding.helper_dashboard(self.helper)
        self.assertEqual(ctx.exception.code, 'SETUP_REQUIRED')

    @patch('core.services.stripe_connect.get_onboarding_status')
    def test_dashboard_with_incomplete_onboarding(self, get_status):
        self.set_helper_profile(stripe_account_id='acct_1')
        get_status.return_value = {
            'accountId': 'acct_1', 'detailsSubmitted': False, 'chargesEnabled': False,
            'payoutsEnabled': False, 'currentlyDue': ['individual.dob.day'], 'isFullyOnboarded': False,
        }
        with self.assertRaises(PreconditionError) as ctx:
            onboarding.helper_dashboard(self.helper)
        self.assertEqual(ctx.exception.code, 'ONBOARDING_INCOMPLETE')
        self.assertIn('onboardingStatus', ctx.exception.as_response_body())

    def test_customer_creation_not_supported(self):
        with self.assertRaises(NotSupported) as ctx:
            onboarding.create_customer(self.requester, {})
        self.assertEqual(ctx.exception.status, 501)
