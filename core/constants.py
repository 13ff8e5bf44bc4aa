# core/constants.py

from decimal import Decimal

# --- PAYMENT PROVIDERS ---

PROVIDER_AIRWALLEX = 'airwallex'   # card / wallet processor, intent based
PROVIDER_STRIPE = 'stripe'         # connected accounts, session based
PROVIDER_PAYPAL = 'paypal'         # email payouts, order based

DEFAULT_PAYMENT_PROVIDER = PROVIDER_AIRWALLEX

PAYMENT_PROVIDER_CHOICES = (
    (PROVIDER_AIRWALLEX, 'Airwallex'),
    (PROVIDER_STRIPE, 'Stripe Connect'),
    (PROVIDER_PAYPAL, 'PayPal'),
)

PAYMENT_PROVIDERS = tuple(p for p, _ in PAYMENT_PROVIDER_CHOICES)

# Credential a helper needs on their payment profile, per provider
PROVIDER_CREDENTIAL_FIELD = {
    PROVIDER_AIRWALLEX: 'iban',
    PROVIDER_STRIPE: 'stripe_account_id',
    PROVIDER_PAYPAL: 'paypal_email',
}

# --- TASK PAYMENT STATES ---

PAYMENT_STATUS_CHOICES = (
    ('none', 'None'),
    ('pending', 'Pending'),
    ('paid', 'Paid'),
    ('failed', 'Failed'),
    ('refunded', 'Refunded'),
)

PAYOUT_STATUS_CHOICES = (
    ('none', 'None'),
    ('pending', 'Pending'),
    ('processing', 'Processing'),
    ('simulated', 'Simulated'),
    ('succeeded', 'Succeeded'),
    ('failed', 'Failed'),
)

OPEN_PAYOUT_STATUSES = ('pending', 'processing')

# --- NORMALIZED WEBHOOK EVENTS ---

EVENT_CHARGE_SUCCEEDED = 'charge.succeeded'
EVENT_CHARGE_FAILED = 'charge.failed'
EVENT_PAYOUT_SUCCEEDED = 'payout.succeeded'
EVENT_PAYOUT_FAILED = 'payout.failed'

# --- FEES ---

DEFAULT_SERVICE_FEE = Decimal("2.00")
SERVICE_FEE_SETTING_KEY = 'tasker_service_fee'
