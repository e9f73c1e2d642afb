# Gateway Webhook Event Schemas
# A verified payload is parsed exactly once into one of these variants.
# Event types we do not act on become UnhandledEvent.

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from typing import Annotated, Any, Dict, Literal, Optional, Union, get_args

from services.errors import WebhookVerificationError


# ============================================================================
# GATEWAY OBJECTS
# ============================================================================

class CheckoutSessionObject(BaseModel):
    id: str
    mode: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer: Optional[str] = None
    payment_intent: Optional[str] = None
    setup_intent: Optional[str] = None
    subscription: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def funding_type(self) -> Optional[str]:
        return self.metadata.get("type")


class InvoiceObject(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[Dict[str, Any]] = None
    amount_paid: Optional[int] = None
    billing_reason: Optional[str] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # Newer API versions nest the subscription under parent
        details = (self.parent or {}).get("subscription_details") or {}
        return details.get("subscription")


class SubscriptionObject(BaseModel):
    id: str
    status: str
    customer: Optional[str] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransferObject(BaseModel):
    id: str
    amount: int
    destination: Optional[str] = None
    reversed: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def withdrawal_id(self) -> Optional[str]:
        return self.metadata.get("withdrawal_id")


class CheckoutSessionData(BaseModel):
    object: CheckoutSessionObject


class InvoiceData(BaseModel):
    object: InvoiceObject


class SubscriptionData(BaseModel):
    object: SubscriptionObject


class TransferData(BaseModel):
    object: TransferObject


# ============================================================================
# EVENT VARIANTS
# ============================================================================

class _Event(BaseModel):
    id: str
    created: Optional[int] = None


class CheckoutSessionCompleted(_Event):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class CheckoutAsyncPaymentSucceeded(_Event):
    type: Literal["checkout.session.async_payment_succeeded"]
    data: CheckoutSessionData


class CheckoutAsyncPaymentFailed(_Event):
    type: Literal["checkout.session.async_payment_failed"]
    data: CheckoutSessionData


class InvoicePaid(_Event):
    type: Literal["invoice.paid"]
    data: InvoiceData


class InvoicePaymentFailed(_Event):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


class SubscriptionUpdated(_Event):
    type: Literal["customer.subscription.created", "customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(_Event):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class TransferSucceeded(_Event):
    type: Literal["transfer.created", "transfer.paid"]
    data: TransferData


class TransferFailed(_Event):
    type: Literal["transfer.failed", "transfer.reversed"]
    data: TransferData


class UnhandledEvent(_Event):
    type: str


GatewayEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        CheckoutAsyncPaymentSucceeded,
        CheckoutAsyncPaymentFailed,
        InvoicePaid,
        InvoicePaymentFailed,
        SubscriptionUpdated,
        SubscriptionDeleted,
        TransferSucceeded,
        TransferFailed,
    ],
    Field(discriminator="type"),
]

HANDLED_VARIANTS = (
    CheckoutSessionCompleted,
    CheckoutAsyncPaymentSucceeded,
    CheckoutAsyncPaymentFailed,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionUpdated,
    SubscriptionDeleted,
    TransferSucceeded,
    TransferFailed,
)

HANDLED_TYPES = frozenset(
    event_type
    for variant in HANDLED_VARIANTS
    for event_type in get_args(variant.model_fields["type"].annotation)
)

_event_adapter = TypeAdapter(GatewayEvent)


class EventEnvelope(BaseModel):
    id: str
    type: str


def parse_event(payload: Dict[str, Any]):
    """
    Parse a verified payload into its event variant.
    Raises WebhookVerificationError when the payload does not match its declared type.
    """
    try:
        envelope = EventEnvelope.model_validate(payload)
        if envelope.type not in HANDLED_TYPES:
            return UnhandledEvent(id=envelope.id, type=envelope.type, created=payload.get("created"))
        return _event_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise WebhookVerificationError(f"Malformed webhook payload: {exc.error_count()} error(s)", code="malformed_payload") from exc
