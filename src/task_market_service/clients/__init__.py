"""HTTP clients for the identity service and the payment gateway."""

from task_market_service.clients.identity_client import Actor, IdentityClient
from task_market_service.clients.payment_gateway import (
    GatewayIntent,
    PaymentGateway,
    StripeGateway,
)

__all__ = ["Actor", "GatewayIntent", "IdentityClient", "PaymentGateway", "StripeGateway"]
