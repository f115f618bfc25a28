"""
User -> custodial sub-wallet mapping.

Each primary (login) address gets exactly one platform-controlled sub-wallet,
created on first use. Deposits for all of the user's portfolios settle there.
"""

import secrets
import time
from typing import List, Optional

from addresses import format_address, generate_address, normalize_address
from db import Database, UserWalletMapping, utc_now_iso
from locks import KeyedLock


def generate_sub_wallet_id() -> str:
    return f"wallet_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class WalletIdentityMapper:
    """Get-or-create of sub-wallets, safe under concurrent first calls."""

    def __init__(self, db: Database):
        self.db = db
        self._locks = KeyedLock()

    def get_or_create(self, user_address: str) -> UserWalletMapping:
        """
        Return the user's sub-wallet mapping, creating it on first use.

        Args:
            user_address: Primary wallet address (any case)

        Raises:
            InvalidAddressError: If user_address is malformed
        """
        normalized = normalize_address(user_address)

        with self._locks.hold(normalized):
            existing = self.db.get_wallet(normalized)
            if existing:
                touched = self.db.touch_wallet(normalized)
                print(f"[Wallets] Using existing sub-wallet {format_address(existing.sub_wallet_address)} "
                      f"for {format_address(normalized)}")
                return touched or existing

            now = utc_now_iso()
            mapping = UserWalletMapping(
                user_address=normalized,
                sub_wallet_address=generate_address(),
                sub_wallet_id=generate_sub_wallet_id(),
                created_at=now,
                last_used=now,
            )
            stored, created = self.db.insert_wallet_if_absent(mapping)
            if created:
                print(f"[Wallets] Created sub-wallet {format_address(stored.sub_wallet_address)} "
                      f"for {format_address(normalized)}")
            return stored

    def get_sub_wallet_address(self, user_address: str) -> Optional[str]:
        mapping = self.db.get_wallet(normalize_address(user_address))
        return mapping.sub_wallet_address if mapping else None

    def list_mappings(self) -> List[UserWalletMapping]:
        return self.db.get_all_wallets()


def serialize_wallet(mapping: UserWalletMapping) -> dict:
    return {
        "userAddress": mapping.user_address,
        "subWalletAddress": mapping.sub_wallet_address,
        "subWalletId": mapping.sub_wallet_id,
        "createdAt": mapping.created_at,
    }
