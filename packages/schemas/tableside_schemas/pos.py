"""POS integration schemas - canonical data contracts shared by all providers."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, model_validator

# =============================================================================
# Enums
# =============================================================================


class POSProvider(str, Enum):
    """Supported POS providers."""

    SQUARE = "square"
    TOAST = "toast"
    CLOVER = "clover"


class OrderSource(str, Enum):
    """Where an order was placed."""

    PLATFORM_ONLINE = "platform_online"
    POS = "pos"


class CanonicalOrderStatus(str, Enum):
    """Upstream POS order status."""

    OPEN = "open"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELED = "canceled"


class FulfillmentType(str, Enum):
    """Order fulfillment type."""

    PICKUP = "pickup"
    DELIVERY = "delivery"
    DINE_IN = "dine_in"


class FulfillmentStatus(str, Enum):
    """Upstream fulfillment progress reported by the POS."""

    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELED = "canceled"


class LocationStatus(str, Enum):
    """Merchant location status."""

    ACTIVE = "active"
    INACTIVE = "inactive"


# =============================================================================
# Authentication
# =============================================================================


class POSCredentials(BaseModel):
    """Resolved credentials for one provider/location pair."""

    provider: POSProvider
    access_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    location_id: str = ""
    webhook_secret: str = ""
    notification_url: str = ""
    sandbox: bool = False
    allow_unsigned_webhooks: bool = False


class POSSession(BaseModel):
    """Authenticated session with a POS provider."""

    provider: POSProvider
    access_token: str
    expires_at: datetime


# =============================================================================
# Catalog
# =============================================================================


class CanonicalModifier(BaseModel):
    """A single modifier option."""

    id: str
    name: str
    price_cents: int = Field(default=0, ge=0)


class CanonicalModifierGroup(BaseModel):
    """A group of modifier options attached to a catalog item."""

    id: str
    external_id: str
    name: str
    required: bool = False
    min_selected: int = Field(default=0, ge=0)
    max_selected: int | None = None
    modifiers: list[CanonicalModifier] = Field(default_factory=list)


class CanonicalCatalogItem(BaseModel):
    """A sellable catalog entry, one per provider variation."""

    id: str
    external_id: str = Field(description="ID in the POS system")
    variation_id: str | None = None
    provider: POSProvider
    name: str
    description: str = ""
    price_cents: int = Field(ge=0)
    currency: str = "USD"
    is_available: bool = True
    category_id: str | None = None
    image_url: str = ""
    modifier_groups: list[CanonicalModifierGroup] = Field(default_factory=list)


# =============================================================================
# Orders
# =============================================================================


class CanonicalOrderItemModifier(BaseModel):
    """A modifier applied to an order line."""

    id: str | None = None
    name: str
    price_cents: int = 0


class CanonicalOrderItem(BaseModel):
    """A single order line."""

    external_id: str
    catalog_item_id: str | None = None
    name: str
    quantity: int = Field(gt=0)
    unit_price_cents: int
    total_price_cents: int
    modifiers: list[CanonicalOrderItemModifier] = Field(default_factory=list)
    notes: str = ""


class CanonicalOrder(BaseModel):
    """
    Provider-agnostic order.

    Totals always satisfy
    total = subtotal + tax - discount + adjustment, where adjustment
    carries tips, service charges or provider rounding residue.
    """

    id: str = Field(description="Tenant-facing reference, stable across retries")
    external_id: str
    provider: POSProvider
    location_id: str
    source: OrderSource = OrderSource.POS
    status: CanonicalOrderStatus
    items: list[CanonicalOrderItem] = Field(default_factory=list)
    subtotal_cents: int
    tax_cents: int = 0
    discount_cents: int = Field(default=0, ge=0)
    adjustment_cents: int = 0
    total_cents: int
    currency: str = "USD"
    created_at: datetime
    updated_at: datetime
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    fulfillment_type: FulfillmentType | None = None
    fulfillment_status: FulfillmentStatus | None = None
    scheduled_pickup_at: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_totals(self) -> "CanonicalOrder":
        expected = (
            self.subtotal_cents
            + self.tax_cents
            - self.discount_cents
            + self.adjustment_cents
        )
        if self.total_cents != expected:
            raise ValueError(
                f"total_cents {self.total_cents} does not reconcile with "
                f"subtotal + tax - discount + adjustment = {expected}"
            )
        return self


# =============================================================================
# Locations
# =============================================================================


class Address(BaseModel):
    """Postal address."""

    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""


class CanonicalLocation(BaseModel):
    """Merchant location metadata."""

    id: str
    provider: POSProvider
    name: str
    address: Address | None = None
    phone: str = ""
    timezone: str = ""
    currency: str = "USD"
    status: LocationStatus = LocationStatus.ACTIVE


# =============================================================================
# Checkout
# =============================================================================


class CheckoutModifier(BaseModel):
    """A modifier selection on a checkout line."""

    id: str


class CheckoutLineItem(BaseModel):
    """A catalog line requested at checkout."""

    catalog_item_id: str
    variation_id: str | None = None
    quantity: int = Field(default=1, ge=1)
    modifiers: list[CheckoutModifier] = Field(default_factory=list)
    note: str = ""


class CheckoutInput(BaseModel):
    """Request to build a provider-hosted checkout."""

    location_id: str
    items: list[CheckoutLineItem] = Field(min_length=1)
    customer_email: str | None = None
    customer_phone: str | None = None
    customer_name: str | None = None
    fulfillment_type: FulfillmentType = FulfillmentType.PICKUP
    scheduled_pickup_at: datetime | None = None
    redirect_url: str
    reference_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutResult(BaseModel):
    """Provider-hosted checkout handle."""

    checkout_url: str
    order_id: str
    reference_id: str
    expires_at: datetime | None = None


# =============================================================================
# Webhooks
# =============================================================================


class WebhookEventBase(BaseModel):
    """Fields shared by every canonical webhook event."""

    provider: POSProvider
    event_id: str
    occurred_at: datetime
    location_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class OrderWebhookEvent(WebhookEventBase):
    """An order was created or changed in the POS."""

    event_type: Literal[
        "order.created",
        "order.updated",
        "order.paid",
        "order.completed",
        "order.canceled",
    ]
    order_id: str
    order: CanonicalOrder | None = None


class PaymentWebhookEvent(WebhookEventBase):
    """A payment was created or changed in the POS."""

    event_type: Literal["payment.created", "payment.updated"]
    payment_id: str
    order_id: str | None = None
    payment_status: str | None = None


class UnknownWebhookEvent(WebhookEventBase):
    """A delivery that could not be mapped to a known event."""

    event_type: Literal["unknown"] = "unknown"
    provider_event_type: str = ""
    reason: str = ""


CanonicalWebhookEvent = Annotated[
    OrderWebhookEvent | PaymentWebhookEvent | UnknownWebhookEvent,
    Field(discriminator="event_type"),
]

_webhook_event_adapter: TypeAdapter[Any] = TypeAdapter(CanonicalWebhookEvent)


def parse_webhook_event(data: dict[str, Any]) -> CanonicalWebhookEvent:
    """Rehydrate a serialized canonical webhook event."""
    event: CanonicalWebhookEvent = _webhook_event_adapter.validate_python(data)
    return event
