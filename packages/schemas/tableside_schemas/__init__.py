"""Tableside Schemas - Pydantic models for data contracts."""

from tableside_schemas.pos import (
    Address,
    CanonicalCatalogItem,
    CanonicalLocation,
    CanonicalModifier,
    CanonicalModifierGroup,
    CanonicalOrder,
    CanonicalOrderItem,
    CanonicalOrderItemModifier,
    CanonicalOrderStatus,
    CanonicalWebhookEvent,
    CheckoutInput,
    CheckoutLineItem,
    CheckoutModifier,
    CheckoutResult,
    FulfillmentStatus,
    FulfillmentType,
    LocationStatus,
    OrderSource,
    OrderWebhookEvent,
    PaymentWebhookEvent,
    POSCredentials,
    POSProvider,
    POSSession,
    UnknownWebhookEvent,
    parse_webhook_event,
)

__all__ = [
    "Address",
    "CanonicalCatalogItem",
    "CanonicalLocation",
    "CanonicalModifier",
    "CanonicalModifierGroup",
    "CanonicalOrder",
    "CanonicalOrderItem",
    "CanonicalOrderItemModifier",
    "CanonicalOrderStatus",
    "CanonicalWebhookEvent",
    "CheckoutInput",
    "CheckoutLineItem",
    "CheckoutModifier",
    "CheckoutResult",
    "FulfillmentStatus",
    "FulfillmentType",
    "LocationStatus",
    "OrderSource",
    "OrderWebhookEvent",
    "POSCredentials",
    "POSProvider",
    "POSSession",
    "PaymentWebhookEvent",
    "UnknownWebhookEvent",
    "parse_webhook_event",
]
