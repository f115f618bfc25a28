from fastapi import APIRouter, Query

from ledger import TransactionLedger, transaction_to_dict
from price_service import PriceService


def create_system_router(
    *,
    price_service: PriceService,
    ledger: TransactionLedger,
    chain_id: int,
    usdc_address: str,
    terms_domain_name: str,
    price_source: str,
    signature_max_age_seconds: int,
) -> APIRouter:
    router = APIRouter()

    @router.get("/api/settings")
    def get_settings():
        """Get public application settings."""
        return {
            "chainId": chain_id,
            "usdcAddress": usdc_address,
            "termsDomainName": terms_domain_name,
            "priceSource": price_source,
            "priceCacheTtlSeconds": price_service.ttl_seconds,
            "signatureMaxAgeSeconds": signature_max_age_seconds,
        }

    @router.get("/api/prices")
    def get_prices(symbols: str = Query(..., min_length=1)):
        """Current USD prices for a comma-separated symbol list."""
        requested = [s.strip() for s in symbols.split(",") if s.strip()]
        quotes = price_service.get_batch_prices(requested)
        return {
            "success": True,
            "prices": {symbol: quote.to_dict() for symbol, quote in quotes.items()},
        }

    @router.get("/api/admin/transactions/pending")
    def get_pending_transactions():
        """Ledger entries still pending (left behind by failed persistence)."""
        pending = ledger.list_pending()
        return {"success": True, "transactions": [transaction_to_dict(t) for t in pending]}

    return router
