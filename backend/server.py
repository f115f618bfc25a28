import os
from pathlib import Path
from typing import Callable, Optional

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import CHAIN_ID, SIGNATURE_MAX_AGE_SECONDS, TERMS_DOMAIN_NAME, SignatureAuthenticator
from db import Database, get_database, init_db
from errors import VaultError
from ledger import TransactionLedger
from portfolio_service import PortfolioService
from price_service import PRICE_SOURCE, PriceService
from routers.auth_router import create_auth_router
from routers.portfolios_router import create_portfolios_router
from routers.system_router import create_system_router
from routers.wallets_router import create_wallets_router
from settlement import SettlementExecutor, SimulatedSettlementExecutor, get_usdc_address
from wallets import WalletIdentityMapper


def create_app(
    db: Optional[Database] = None,
    price_service: Optional[PriceService] = None,
    settlement: Optional[SettlementExecutor] = None,
    clock: Optional[Callable[[], float]] = None,
    chain_id: int = CHAIN_ID,
) -> FastAPI:
    """Wire services and routers into a FastAPI app."""
    db = db or get_database()
    price_service = price_service or PriceService()
    settlement = settlement or SimulatedSettlementExecutor()

    wallet_mapper = WalletIdentityMapper(db)
    ledger = TransactionLedger(db)
    authenticator = SignatureAuthenticator(wallet_mapper=wallet_mapper, chain_id=chain_id)
    if clock is not None:
        authenticator.clock = clock
    service = PortfolioService(db, price_service, ledger, settlement, wallet_mapper, chain_id=chain_id)

    app = FastAPI()

    # CORS: support both local development and production
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    # Add Railway production URL if set
    railway_url = os.getenv("RAILWAY_PUBLIC_DOMAIN")
    if railway_url:
        allowed_origins.append(f"https://{railway_url}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        if exc.status_code >= 500:
            print(f"[Server] {request.method} {request.url.path} failed: {exc.error_code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "code": exc.error_code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request format", "code": "INVALID_REQUEST"},
        )

    @app.on_event("startup")
    def startup_event():
        """Initialize database on startup."""
        init_db(db)

    app.include_router(create_auth_router(authenticator=authenticator, wallet_mapper=wallet_mapper))
    app.include_router(create_wallets_router(wallet_mapper=wallet_mapper))
    app.include_router(create_portfolios_router(service=service))
    app.include_router(create_system_router(
        price_service=price_service,
        ledger=ledger,
        chain_id=chain_id,
        usdc_address=get_usdc_address(chain_id),
        terms_domain_name=TERMS_DOMAIN_NAME,
        price_source=PRICE_SOURCE,
        signature_max_age_seconds=SIGNATURE_MAX_AGE_SECONDS,
    ))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
