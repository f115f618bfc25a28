"""
Authentication by signed terms acceptance.

Features:
- EIP-712 typed-data signature verification (Terms message, Base chain)
- Replay window: stale after 5 minutes, at most 1 minute of future clock skew
- JWT session credential and FastAPI dependency for protected endpoints
"""

import os
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address
from fastapi import Header

from addresses import format_address, is_valid_address
from errors import (
    AuthenticationError,
    FutureTimestampError,
    InvalidSignatureError,
    MalformedSignatureError,
    SignatureExpiredError,
)

# JWT configuration
JWT_SECRET = os.getenv("JWT_SECRET", secrets.token_urlsafe(32))
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_DAYS = int(os.getenv("JWT_EXPIRATION_DAYS", "30"))

# Typed-data domain
TERMS_DOMAIN_NAME = os.getenv("TERMS_DOMAIN_NAME", "Vaultify")
TERMS_DOMAIN_VERSION = "1"
CHAIN_ID = int(os.getenv("CHAIN_ID", "8453"))
TERMS_AGREEMENT = "I accept the Terms & Conditions and understand the risks of Web3 investment"

SIGNATURE_MAX_AGE_SECONDS = int(os.getenv("SIGNATURE_MAX_AGE_SECONDS", "300"))
SIGNATURE_MAX_FUTURE_SKEW_SECONDS = int(os.getenv("SIGNATURE_MAX_FUTURE_SKEW_SECONDS", "60"))

SIGNATURE_RE = re.compile(r"0x[a-fA-F0-9]{130}")

TERMS_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
    ],
    "Terms": [
        {"name": "user", "type": "address"},
        {"name": "agreement", "type": "string"},
        {"name": "timestamp", "type": "uint256"},
    ],
}


def build_terms_typed_data(
    address: str,
    timestamp: int,
    domain_name: str = TERMS_DOMAIN_NAME,
    chain_id: int = CHAIN_ID,
) -> dict:
    """Full EIP-712 payload the user signs when accepting the terms."""
    return {
        "types": TERMS_TYPES,
        "primaryType": "Terms",
        "domain": {
            "name": domain_name,
            "version": TERMS_DOMAIN_VERSION,
            "chainId": chain_id,
        },
        "message": {
            "user": to_checksum_address(address),
            "agreement": TERMS_AGREEMENT,
            "timestamp": timestamp,
        },
    }


def create_jwt_token(address: str) -> str:
    """
    Create JWT session credential for a verified address.

    Args:
        address: Wallet address that proved possession

    Returns:
        JWT token string
    """
    payload = {
        "address": address.lower(),
        "exp": datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRATION_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt_token(token: str) -> Optional[dict]:
    """
    Decode and validate JWT token.

    Returns:
        Decoded payload dict if valid, None otherwise
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        print("[Auth] Token expired")
        return None
    except jwt.InvalidTokenError as e:
        print(f"[Auth] Invalid token: {e}")
        return None


async def get_current_address(authorization: Optional[str] = Header(None)) -> str:
    """
    FastAPI dependency: extract the authenticated wallet address from JWT.

    Raises:
        AuthenticationError: If token is missing, invalid, or expired
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Not authenticated", error_code="NOT_AUTHENTICATED")

    payload = decode_jwt_token(authorization.replace("Bearer ", ""))
    if not payload or not payload.get("address"):
        raise AuthenticationError("Invalid or expired token", error_code="INVALID_TOKEN")

    return payload["address"]


class SignatureAuthenticator:
    """Verify signed terms acceptance and issue a session credential."""

    def __init__(
        self,
        wallet_mapper=None,
        clock: Callable[[], float] = time.time,
        domain_name: str = TERMS_DOMAIN_NAME,
        chain_id: int = CHAIN_ID,
        max_age_seconds: int = SIGNATURE_MAX_AGE_SECONDS,
        max_future_skew_seconds: int = SIGNATURE_MAX_FUTURE_SKEW_SECONDS,
    ):
        self.wallet_mapper = wallet_mapper
        self.clock = clock
        self.domain_name = domain_name
        self.chain_id = chain_id
        self.max_age_seconds = max_age_seconds
        self.max_future_skew_seconds = max_future_skew_seconds

    def check_window(self, timestamp: int) -> None:
        """Reject timestamps outside [now - max_age, now + max_skew]."""
        now = int(self.clock())
        time_diff = now - timestamp

        if time_diff > self.max_age_seconds:
            print(f"[Auth] Signature expired: diff={time_diff}s timestamp={timestamp} now={now}")
            raise SignatureExpiredError(time_diff)

        if time_diff < -self.max_future_skew_seconds:
            print(f"[Auth] Signature timestamp in future: diff={time_diff}s timestamp={timestamp} now={now}")
            raise FutureTimestampError(-time_diff)

    def recover_signer(self, address: str, signature: str, timestamp: int) -> str:
        typed_data = build_terms_typed_data(address, timestamp, self.domain_name, self.chain_id)
        signable = encode_typed_data(full_message=typed_data)
        try:
            return Account.recover_message(signable, signature=signature)
        except Exception as e:
            raise MalformedSignatureError(f"could not recover signer ({e})") from e

    def verify(self, address: str, signature: str, timestamp: int) -> str:
        """
        Verify that address signed the terms message for timestamp.

        Args:
            address: Claimed signer (0x + 40 hex)
            signature: 65-byte hex signature
            timestamp: Unix seconds embedded in the signed message

        Returns:
            JWT session credential

        Raises:
            MalformedSignatureError, SignatureExpiredError,
            FutureTimestampError, InvalidSignatureError
        """
        if not is_valid_address(address):
            raise MalformedSignatureError("address must be 0x followed by 40 hex characters")
        if not isinstance(signature, str) or not SIGNATURE_RE.fullmatch(signature):
            raise MalformedSignatureError("signature must be 0x followed by 130 hex characters")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp <= 0:
            raise MalformedSignatureError("timestamp must be a positive integer")

        self.check_window(timestamp)

        started = time.time()
        signer = self.recover_signer(address, signature, timestamp)
        elapsed_ms = int((time.time() - started) * 1000)

        if signer.lower() != address.lower():
            print(f"[Auth] Signature verification failed for {format_address(address)} ({elapsed_ms}ms)")
            raise InvalidSignatureError()

        print(f"[Auth] Signature verified for {format_address(address)} ({elapsed_ms}ms)")

        if self.wallet_mapper is not None:
            try:
                mapping = self.wallet_mapper.get_or_create(address)
                print(f"[Auth] Sub-wallet ready: {format_address(mapping.sub_wallet_address)}")
            except Exception as e:
                # Retried on the next sub-wallet request
                print(f"[Auth] Sub-wallet creation deferred for {format_address(address)}: {e}")

        return create_jwt_token(address)
