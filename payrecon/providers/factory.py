from __future__ import annotations

from typing import Optional

from payrecon.config import Settings
from payrecon.domain.enums import Gateway

from .base import GatewayQueryClient, WebhookAdapter


def get_webhook_adapter(gateway: Gateway) -> Optional[WebhookAdapter]:
    """Return the webhook adapter for gateways that sign ``t=,v1=`` webhooks."""
    if gateway == Gateway.AIRWALLEX:
        from .airwallex_gateway import AirwallexWebhookAdapter

        return AirwallexWebhookAdapter()
    if gateway == Gateway.STRIPE:
        from .stripe_gateway import StripeWebhookAdapter

        return StripeWebhookAdapter()
    return None


def get_query_client(gateway: Gateway, settings: Settings) -> Optional[GatewayQueryClient]:
    """Return a status query client, or None for gateways without a query API.

    Raises ValueError when the gateway supports queries but lacks credentials.
    """
    if gateway == Gateway.AIRWALLEX:
        from .airwallex_gateway import AirwallexQueryClient

        return AirwallexQueryClient(settings)
    if gateway == Gateway.STRIPE:
        from .stripe_gateway import StripeQueryClient

        return StripeQueryClient(settings)
    if gateway == Gateway.PAYPAL:
        from .paypal_gateway import PayPalQueryClient

        return PayPalQueryClient(settings)
    if gateway == Gateway.WEBPAY:
        from .webpay_gateway import WebpayQueryClient

        return WebpayQueryClient(settings)
    return None
