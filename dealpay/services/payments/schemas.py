"""API and internal result schemas for the payments service."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderItem(BaseModel):
    """One order line as stored on `payment_orders.order_items`."""

    model_config = ConfigDict(populate_by_name=True)

    deal_id: str = Field(alias="dealId", min_length=1)
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)
    name: str | None = None


def merge_order_items(items: list[OrderItem]) -> list[OrderItem]:
    """Collapse repeated deal lines into one, summing quantities.

    Purchases are unique per order and deal, so every consumer of order items
    works on the merged list. The first line's price and name win.
    """

    merged: dict[str, OrderItem] = {}
    for item in items:
        if item.deal_id in merged:
            existing = merged[item.deal_id]
            merged[item.deal_id] = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
        else:
            merged[item.deal_id] = item
    return list(merged.values())


class CustomerInfo(BaseModel):
    """Buyer details forwarded to the gateway checkout page."""

    model_config = ConfigDict(populate_by_name=True)

    email: str
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    phone: str = ""
    country: str = "CY"
    return_url: str = Field(alias="returnUrl")


class CheckoutRequest(BaseModel):
    """Order creation payload accepted from the storefront."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    order_items: list[OrderItem] = Field(alias="orderItems", min_length=1)
    customer_info: CustomerInfo = Field(alias="customerInfo")

    @field_validator("order_items")
    @classmethod
    def merge_duplicate_deals(cls, items: list[OrderItem]) -> list[OrderItem]:
        return merge_order_items(items)


class CheckoutResponse(BaseModel):
    success: bool
    checkout_url: str = Field(serialization_alias="checkoutUrl")
    order_code: str = Field(serialization_alias="orderCode")


class OrderStatusResponse(BaseModel):
    """Minimal order status view for operators and the storefront."""

    correlation_id: str
    order_id: str
    status: str
    terminal: bool
    fulfilled: bool


class FulfillmentReport(BaseModel):
    """What one fulfillment run did, item by item."""

    fulfilled_deal_ids: list[str] = Field(default_factory=list)
    failed_deal_ids: list[str] = Field(default_factory=list)
    missing_deal_ids: list[str] = Field(default_factory=list)
    cart_cleared: bool = False


class ReconcileOutcome(BaseModel):
    """Result of reconciling one gateway notification.

    `outcome` is one of `missing_correlation_id`, `order_not_found`,
    `status_updated`, `duplicate_completion`, `fulfilled`.
    """

    outcome: str
    correlation_id: str | None = None
    status: str | None = None
    fulfillment: FulfillmentReport | None = None
