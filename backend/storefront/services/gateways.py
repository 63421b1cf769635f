# Overview: Payment gateway collaborator abstraction and registry.

"""
Payment gateways

The engine never speaks a provider protocol. A gateway only has to:
- charge(order_id, amount, currency) -> provider_payment_id | None
    Returning an id means the charge settled synchronously.
    Returning None means the result will arrive later (webhook / poll) and is
    delivered through payment_service.mark_result().
- refund(provider_payment_id, amount, currency) -> None

Raise GatewayTimeout when the provider did not answer in time (the payment
stays 'initiated' until a result arrives or the reconciliation sweep fails it),
GatewayDeclined when the provider refused the charge.
"""

from __future__ import annotations

from decimal import Decimal

from ..errors import StorefrontError, ValidationError


class GatewayError(StorefrontError):
    """Provider-side failure."""


class GatewayTimeout(GatewayError):
    """No answer from the provider; outcome unknown."""
    retryable = True


class GatewayDeclined(GatewayError):
    """The provider refused the charge."""


class PaymentGateway:
    """Base class for provider adapters."""

    name = "base"

    def charge(self, order_id: int, amount: Decimal, currency: str) -> str | None:
        raise NotImplementedError

    def refund(self, provider_payment_id: str | None, amount: Decimal, currency: str) -> None:
        raise NotImplementedError


class ManualGateway(PaymentGateway):
    """
    Offline settlement (bank transfer, cash on delivery).

    Nothing is sent anywhere; an operator confirms the payment later with
    mark_result().
    """

    name = "manual"

    def charge(self, order_id: int, amount: Decimal, currency: str) -> str | None:
        return None

    def refund(self, provider_payment_id: str | None, amount: Decimal, currency: str) -> None:
        return None


_GATEWAYS: dict[str, PaymentGateway] = {}


def register_gateway(gateway: PaymentGateway, name: str | None = None) -> PaymentGateway:
    key = (name or gateway.name or "").strip().lower()
    if not key:
        raise ValidationError("gateway name is required")
    _GATEWAYS[key] = gateway
    return gateway


def unregister_gateway(name: str) -> None:
    _GATEWAYS.pop(name.strip().lower(), None)


def get_gateway(name: str) -> PaymentGateway:
    gateway = _GATEWAYS.get((name or "").strip().lower())
    if gateway is None:
        raise ValidationError(
            f"Unknown payment provider: {name}. Must be one of {sorted(_GATEWAYS)}",
            details={"provider": name},
        )
    return gateway


def registered_providers() -> list[str]:
    return sorted(_GATEWAYS)


register_gateway(ManualGateway())
