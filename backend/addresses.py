"""
EVM address helpers: format validation, checksumming and generation of
custodial addresses.
"""

import re

from eth_account import Account
from eth_utils import to_checksum_address

from errors import InvalidAddressError

EVM_ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")


def is_valid_address(address: str) -> bool:
    """Check that address is a 20-byte 0x-prefixed hex string."""
    if not address or not isinstance(address, str):
        return False
    return bool(EVM_ADDRESS_RE.fullmatch(address))


def validate_address(address: str) -> str:
    """
    Validate an address and return its checksummed form.

    Raises:
        InvalidAddressError: If address is empty or not 40 hex characters
    """
    if not is_valid_address(address):
        raise InvalidAddressError(address)
    return to_checksum_address(address)


def normalize_address(address: str) -> str:
    """Lower-cased key form used for lookups and ownership checks."""
    return validate_address(address).lower()


def generate_address() -> str:
    """
    Generate a fresh custodial address.

    The key material is discarded; a production deployment swaps this for the
    custody provider's account creation call.
    """
    account = Account.create()
    address = str(account.address)
    if not is_valid_address(address):
        raise InvalidAddressError(address)
    return to_checksum_address(address)


def format_address(address: str) -> str:
    """Shorten address for log lines: 0x1234...abcd"""
    if not address:
        return ""
    return f"{address[:6]}...{address[-4:]}"
