# core/urls.py

from django.urls import path
from . import views

urlpatterns = [
    path('provider', views.payment_provider, name='payment_provider'),
    path('create-checkout', views.create_checkout, name='create_checkout'),
    path('create-payment', views.create_payment, name='create_payment'),
    path('create-payout', views.create_payout, name='create_payout'),
    path('payment-status', views.payment_status, name='payment_status'),
    path('payout-status', views.payout_status, name='payout_status'),
    path('create-customer', views.create_customer, name='create_customer'),
    path('simulate-payment', views.simulate_payment, name='simulate_payment'),

    # Helpers
    path('helper-onboarding', views.helper_onboarding, name='helper_onboarding'),
    path('helper-dashboard', views.helper_dashboard, name='helper_dashboard'),

    # Provider specific
    path('airwallex/payment-status', views.airwallex_payment_status, name='airwallex_payment_status'),
    path('airwallex/confirm-payment', views.airwallex_confirm_payment, name='airwallex_confirm_payment'),
    path('webhook/<str:provider>', views.payment_webhook, name='payment_webhook'),

    path('admin/update-payment-status', views.admin_update_payment_status, name='admin_update_payment_status'),
]
