# core/admin.py

from django.contrib import admin, messages

from .models import (
    CustomUser,
    PaymentProfile,
    Task,
    PayoutRecord,
    PlatformSetting,
)
from .services.errors import PaymentError
from .services.status import payout_status


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'title',
        'created_by',
        'assigned_to',
        'budget',
        'payment_status',
        'payment_provider',
        'payout_status',
    )
    list_filter = (
        'payment_status',
        'payment_provider',
        'payout_status',
    )
    search_fields = (
        'id',
        'title',
        'payment_intent_id',
        'payout_id',
        'created_by__username',
        'assigned_to__username',
    )


@admin.register(PayoutRecord)
class PayoutRecordAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'task',
        'helper',
        'amount',
        'currency',
        'provider',
        'status',
        'provider_payout_id',
        'created_at',
        'completed_at',
    )
    list_filter = ('provider', 'status')
    search_fields = ('provider_payout_id', 'idempotency_key', 'helper__username')
    readonly_fields = ('idempotency_key', 'created_at', 'updated_at', 'completed_at')
    actions = ['refresh_status']

    def refresh_status(self, request, queryset):
        """
        Admin action: poll the provider for the selected payouts.
        """
        updated = 0
        for record in queryset.exclude(provider_payout_id=''):
            try:
                result = payout_status(record.provider_payout_id)
            except PaymentError as e:
                self.message_user(request, f"Payout #{record.pk}: {e.message}", level=messages.WARNING)
                continue
            if result.get('updated'):
                updated += 1
        self.message_user(request, f"Status refreshed, {updated} payout(s) updated.")

    refresh_status.short_description = "Refresh status from payment provider"


@admin.register(CustomUser)
class CustomUserAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'username',
        'email',
        'role',
        'is_active',
        'is_staff',
    )
    list_filter = ('role', 'is_active', 'is_staff')
    search_fields = ('username', 'email')


@admin.register(PaymentProfile)
class PaymentProfileAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'stripe_account_id', 'paypal_email', 'airwallex_customer_id', 'updated_at')
    search_fields = ('user__username', 'paypal_email', 'stripe_account_id')


@admin.register(PlatformSetting)
class PlatformSettingAdmin(admin.ModelAdmin):
    list_display = ('key', 'value', 'updated_at')
    search_fields = ('key',)
