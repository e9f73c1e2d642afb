# Escrow Ledger Routers Module
# Exports all modular API routers

from routers.offers import router as offers_router
from routers.contracts import router as contracts_router
from routers.wallet import router as wallet_router
from routers.subscriptions import router as subscriptions_router
from routers.webhooks import router as webhooks_router
from routers.notifications import router as notifications_router
from routers.admin_withdrawals import router as admin_withdrawals_router
from routers.admin_webhooks import router as admin_webhooks_router

__all__ = [
    'offers_router',
    'contracts_router',
    'wallet_router',
    'subscriptions_router',
    'webhooks_router',
    'notifications_router',
    'admin_withdrawals_router',
    'admin_webhooks_router',
]
