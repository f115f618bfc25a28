from fastapi import APIRouter, Query

from wallets import WalletIdentityMapper, serialize_wallet


def create_wallets_router(*, wallet_mapper: WalletIdentityMapper) -> APIRouter:
    router = APIRouter()

    @router.get("/api/wallets/sub-wallet")
    def get_sub_wallet(address: str = Query(..., min_length=1)):
        """Retrieve or create the user's sub-wallet (where deposits settle)."""
        mapping = wallet_mapper.get_or_create(address)
        return {"success": True, "data": serialize_wallet(mapping)}

    return router
