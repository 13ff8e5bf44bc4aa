# core/serializers.py

from rest_framework import serializers

from .constants import PAYMENT_STATUS_CHOICES
from .models import Task


# Request bodies use the camelCase keys the web client sends
class CreateCheckoutSerializer(serializers.Serializer):
    taskId = serializers.IntegerField(min_value=1)
    returnUrl = serializers.URLField(required=False, allow_blank=True)
    cancelUrl = serializers.URLField(required=False, allow_blank=True)


class CreatePayoutSerializer(serializers.Serializer):
    taskId = serializers.IntegerField(required=False, min_value=1)
    helperId = serializers.IntegerField(required=False, min_value=1)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    currency = serializers.CharField(required=False, allow_blank=True, max_length=3)
    idempotencyKey = serializers.CharField(required=False, allow_blank=True, max_length=200)
    simulatePayout = serializers.BooleanField(required=False, default=False)
    iban = serializers.CharField(required=False, allow_blank=True, max_length=64)
    accountHolderName = serializers.CharField(required=False, allow_blank=True, max_length=255)
    paypalEmail = serializers.EmailField(required=False, allow_blank=True)

    def validate(self, attrs):
        if not attrs.get('taskId') and not attrs.get('helperId'):
            raise serializers.ValidationError('taskId or helperId is required')
        return attrs


class UpdatePaymentStatusSerializer(serializers.Serializer):
    taskId = serializers.IntegerField(min_value=1)
    status = serializers.ChoiceField(choices=[c for c, _ in PAYMENT_STATUS_CHOICES if c != 'none'])
    paymentIntentId = serializers.CharField(required=False, allow_blank=True, max_length=255)


class TaskPaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Task
        fields = [
            'id',
            'title',
            'budget',
            'payment_status',
            'payment_provider',
            'payment_intent_id',
            'payout_id',
            'payout_status',
        ]
        read_only_fields = fields
