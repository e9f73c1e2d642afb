# Schemas module for the Escrow Ledger
# Request/response models and gateway webhook event variants

from schemas.marketplace import (
    OfferCreate,
    OfferReject,
    OfferResponse,
    ContractResponse,
    ContractAuditLogResponse,
    PaymentResponse,
    CheckoutResponse,
    BalanceResponse,
    WithdrawRequest,
    WithdrawalResponse,
    WithdrawalMethodResponse,
    WebhookEventResponse,
)

from schemas.webhooks import parse_event, UnhandledEvent

__all__ = [
    "OfferCreate",
    "OfferReject",
    "OfferResponse",
    "ContractResponse",
    "ContractAuditLogResponse",
    "PaymentResponse",
    "CheckoutResponse",
    "BalanceResponse",
    "WithdrawRequest",
    "WithdrawalResponse",
    "WithdrawalMethodResponse",
    "WebhookEventResponse",
    "parse_event",
    "UnhandledEvent",
]
