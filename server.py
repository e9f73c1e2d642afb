# FastAPI Server for the Escrow Payment & Balance Ledger

import logging
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from database.config import init_db, SessionLocal
from core.stripe_service import StripeService
from services.errors import LedgerError
from services.withdrawal_methods import seed_withdrawal_methods
from routers import (
    offers_router,
    contracts_router,
    wallet_router,
    subscriptions_router,
    webhooks_router,
    notifications_router,
    admin_withdrawals_router,
    admin_webhooks_router,
)

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def create_app(gateway=None) -> FastAPI:
    app = FastAPI(
        title="Escrow Ledger API",
        description="Escrow payments, creator balances and withdrawals",
        version="1.0.0"
    )

    # Gateway client is built once and shared through app.state
    app.state.gateway = gateway if gateway is not None else StripeService()

    @app.on_event("startup")
    def startup_event():
        init_db()
        db = SessionLocal()
        try:
            seed_withdrawal_methods(db)
        finally:
            db.close()
        logger.info("Escrow ledger API started")

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.reason}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # CORS Setup - Allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # Required when using "*"
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # ROUTERS (v2 API)
    # ========================================================================
    app.include_router(offers_router, prefix="/api/v2")
    app.include_router(contracts_router, prefix="/api/v2")
    app.include_router(wallet_router, prefix="/api/v2")
    app.include_router(subscriptions_router, prefix="/api/v2")
    app.include_router(webhooks_router, prefix="/api/v2")
    app.include_router(notifications_router, prefix="/api/v2")
    app.include_router(admin_withdrawals_router, prefix="/api/v2")
    app.include_router(admin_webhooks_router, prefix="/api/v2")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=8000)
