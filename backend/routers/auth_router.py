from eth_utils import to_checksum_address
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from auth import SignatureAuthenticator, get_current_address
from wallets import WalletIdentityMapper


class VerifySignatureRequest(BaseModel):
    """Request body for /api/auth/verify-signature."""

    address: str
    signature: str
    timestamp: int


def create_auth_router(
    *,
    authenticator: SignatureAuthenticator,
    wallet_mapper: WalletIdentityMapper,
) -> APIRouter:
    router = APIRouter()

    @router.post("/api/auth/verify-signature")
    def verify_signature(body: VerifySignatureRequest):
        """Verify signed terms acceptance and return a session token."""
        token = authenticator.verify(body.address, body.signature, body.timestamp)
        return {
            "success": True,
            "token": token,
            "address": to_checksum_address(body.address),
        }

    @router.get("/api/auth/me")
    def get_me(address: str = Depends(get_current_address)):
        """Get current session's wallet and sub-wallet."""
        return {
            "address": address,
            "subWalletAddress": wallet_mapper.get_sub_wallet_address(address),
        }

    return router
