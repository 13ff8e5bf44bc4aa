# core/views.py

import logging

from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from .constants import PROVIDER_AIRWALLEX
from .models import Task
from .permissions import IsAuthenticatedAndHelper, IsPlatformAdmin
from .serializers import (
    CreateCheckoutSerializer,
    CreatePayoutSerializer,
    TaskPaymentSerializer,
    UpdatePaymentStatusSerializer,
)
from .services import checkout, onboarding, payouts, status, webhooks
from .services.errors import PaymentError
from .services.state_machine import apply_payment_status
from .utils.payment_provider import provider_config, require_enabled

logger = logging.getLogger(__name__)


def _error_response(exc: PaymentError) -> Response:
    return Response(exc.as_response_body(), status=exc.status)


def _invalid(serializer) -> Response:
    return Response(
        {"error": "Invalid request", "code": "INVALID_REQUEST", "details": serializer.errors},
        status=400,
    )


def _run(action: str, fn, *args, **kwargs) -> Response:
    """Call a payment service and render its result or its error."""
    try:
        return Response(fn(*args, **kwargs))
    except PaymentError as e:
        if e.status >= 500:
            logger.error(f"{action} failed: {e.code} {e.message}")
        return _error_response(e)
    except Exception:
        logger.exception(f"{action} failed unexpectedly")
        return Response({"error": f"Failed to {action}"}, status=500)


# -------------------
# Provider
# -------------------

@api_view(['GET'])
@permission_classes([AllowAny])
def payment_provider(request):
    """Which provider is active; the web client branches its checkout UI on this."""
    return Response(provider_config())


# -------------------
# Requester side
# -------------------

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_checkout(request):
    serializer = CreateCheckoutSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid(serializer)

    data = serializer.validated_data
    return _run(
        "create checkout",
        checkout.create_checkout,
        request.user,
        data['taskId'],
        return_url=data.get('returnUrl') or None,
        cancel_url=data.get('cancelUrl') or None,
    )


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_payment(request):
    return _run("create payment", checkout.create_payment, request.data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def simulate_payment(request):
    return _run("simulate payment", checkout.simulate_payment, request.user, request.data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def payment_status(request):
    ref = request.query_params.get('paymentIntentId') or request.query_params.get('id')
    return _run("get payment status", status.payment_status, ref)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_customer(request):
    return _run("create customer", onboarding.create_customer, request.user, request.data)


# -------------------
# Payouts
# -------------------

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_payout(request):
    serializer = CreatePayoutSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid(serializer)
    return _run("create payout", payouts.create_payout, request.user, serializer.validated_data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def payout_status(request):
    return _run("get payout status", status.payout_status, request.query_params.get('payoutId'))


# -------------------
# Helper onboarding
# -------------------

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticatedAndHelper])
def helper_onboarding(request):
    if request.method == 'GET':
        return _run("get onboarding status", onboarding.helper_onboarding_status, request.user)
    return _run("start onboarding", onboarding.start_helper_onboarding, request.user, request.data)


@api_view(['GET'])
@permission_classes([IsAuthenticatedAndHelper])
def helper_dashboard(request):
    return _run("open payout dashboard", onboarding.helper_dashboard, request.user)


# -------------------
# Airwallex embedded checkout
# -------------------

@api_view(['GET'])
@permission_classes([IsAuthenticated])
def airwallex_payment_status(request):
    try:
        require_enabled(PROVIDER_AIRWALLEX)
    except PaymentError as e:
        return _error_response(e)
    ref = request.query_params.get('paymentIntentId') or request.query_params.get('id')
    return _run("get payment status", status.payment_status, ref)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def airwallex_confirm_payment(request):
    try:
        require_enabled(PROVIDER_AIRWALLEX)
    except PaymentError as e:
        return _error_response(e)
    return _run("confirm payment", checkout.confirm_payment, request.data)


# -------------------
# Webhooks
# -------------------

@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def payment_webhook(request, provider):
    """
    Provider callbacks. The raw body is passed on untouched since every
    signature scheme is computed over the exact bytes.
    """
    try:
        result = webhooks.handle_webhook(provider, request.body, request.headers)
    except PaymentError as e:
        if e.status >= 500:
            logger.error(f"{provider} webhook rejected: {e.code} {e.message}")
        else:
            logger.warning(f"{provider} webhook rejected: {e.code} {e.message}")
        return _error_response(e)
    except Exception:
        logger.exception(f"{provider} webhook processing failed")
        return Response({"error": "Webhook processing failed"}, status=500)
    return Response(result)


# -------------------
# Admin
# -------------------

@api_view(['POST'])
@permission_classes([IsPlatformAdmin])
def admin_update_payment_status(request):
    serializer = UpdatePaymentStatusSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid(serializer)

    data = serializer.validated_data
    try:
        task = Task.objects.get(pk=data['taskId'])
    except Task.DoesNotExist:
        return Response({"error": "Task not found", "code": "TASK_NOT_FOUND"}, status=404)

    try:
        changed = apply_payment_status(
            data['status'],
            task_id=task.pk,
            payment_ref=data.get('paymentIntentId') or None,
            strict=True,
        )
    except PaymentError as e:
        return _error_response(e)

    task.refresh_from_db()
    logger.info(f"Admin {request.user.pk} set task {task.pk} payment_status to {task.payment_status}")
    return Response({"changed": changed, "task": TaskPaymentSerializer(task).data})
