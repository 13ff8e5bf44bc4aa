# core/models.py

from django.db import models
from django.contrib.auth.models import AbstractUser
from django.conf import settings

from .constants import (
    PAYMENT_PROVIDER_CHOICES,
    PAYMENT_STATUS_CHOICES,
    PAYOUT_STATUS_CHOICES,
)


# Custom user model (extends AbstractUser)
class CustomUser(AbstractUser):
    ROLE_CHOICES = (
        ('user', 'User'),
        ('helper', 'Helper'),
        ('admin', 'Admin'),
    )
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='user')

    @property
    def is_platform_admin(self) -> bool:
        return bool(self.is_staff or self.is_superuser or self.role == 'admin')

    def __str__(self):
        return self.username


# Payment credentials of a user. Helpers need the one matching the active provider.
class PaymentProfile(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='payment_profile'
    )

    # Stripe Connect express account (acct_...)
    stripe_account_id = models.CharField(max_length=255, blank=True, default='')

    # Bank account for Airwallex transfers
    iban = models.CharField(max_length=34, blank=True, default='')

    # Receiver of PayPal payouts
    paypal_email = models.EmailField(blank=True, default='')

    # Airwallex customer created for requesters
    airwallex_customer_id = models.CharField(max_length=255, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.user.username} (Payment profile)"


class Task(models.Model):
    title = models.CharField(max_length=255)

    # Agreed price; the authoritative amount charged to the requester
    budget = models.DecimalField(max_digits=10, decimal_places=2)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='created_tasks'
    )

    # Set once a helper is assigned
    assigned_to = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name='assigned_tasks',
        null=True,
        blank=True,
    )

    payment_status = models.CharField(
        max_length=20,
        choices=PAYMENT_STATUS_CHOICES,
        default='none',
    )
    payment_provider = models.CharField(
        max_length=20,
        choices=PAYMENT_PROVIDER_CHOICES,
        blank=True,
        default='',
    )
    # Checkout session / order / intent id on the provider side
    payment_intent_id = models.CharField(max_length=255, blank=True, default='', db_index=True)

    payout_id = models.CharField(max_length=255, blank=True, default='', db_index=True)
    payout_status = models.CharField(
        max_length=20,
        choices=PAYOUT_STATUS_CHOICES,
        default='none',
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Task #{self.pk}: {self.title}"


# Audit trail of payouts. Rows are updated, never deleted.
class PayoutRecord(models.Model):
    task = models.ForeignKey(
        Task,
        on_delete=models.PROTECT,
        related_name='payouts',
        null=True,
        blank=True,
    )
    helper = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='payouts',
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='EUR')

    status = models.CharField(
        max_length=20,
        choices=PAYOUT_STATUS_CHOICES,
        default='pending',
    )
    provider = models.CharField(max_length=20, choices=PAYMENT_PROVIDER_CHOICES)
    provider_payout_id = models.CharField(max_length=255, blank=True, default='', db_index=True)
    # Batch / transfer status as last reported by the provider
    provider_status = models.CharField(max_length=40, blank=True, default='')
    simulated = models.BooleanField(default=False)

    # Caller supplied; a retry for the same task and helper returns the existing row
    idempotency_key = models.CharField(max_length=255, unique=True, null=True, blank=True)

    # IBAN / account / email the money was sent to
    recipient = models.CharField(max_length=255, blank=True, default='')
    error_message = models.TextField(blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Payout #{self.pk} {self.amount} {self.currency} ({self.status})"


# Key/value platform settings editable from the admin
class PlatformSetting(models.Model):
    key = models.CharField(max_length=100, unique=True)
    value = models.CharField(max_length=255)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.key}={self.value}"
