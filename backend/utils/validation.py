import re
from typing import Optional

from solders.pubkey import Pubkey


# Base58 alphabet excludes 0, O, I and l.
SOLANA_ADDRESS_REGEX = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
EVM_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_valid_solana_address(address: Optional[str]) -> bool:
    """True when ``address`` decodes to a 32-byte public key."""
    text = str(address or "").strip()
    if not SOLANA_ADDRESS_REGEX.match(text):
        return False
    try:
        Pubkey.from_string(text)
    except ValueError:
        return False
    return True


def validate_solana_address(address: str) -> str:
    """Validate Solana address format"""
    if not address:
        raise ValueError("Address cannot be empty")
    address = address.strip()
    if not is_valid_solana_address(address):
        raise ValueError(f"Invalid Solana address format: {address}")
    return address


def validate_chain_address(chain: str, address: str) -> str:
    """Validate an address against the address format of ``chain``."""
    if str(chain or "").upper() == "SOLANA":
        return validate_solana_address(address)
    address = (address or "").strip()
    if not EVM_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid EVM address format: {address}")
    return address


def same_address(chain: str, left: Optional[str], right: Optional[str]) -> bool:
    """Address equality under the chain's rules (EVM hex is case-insensitive)."""
    if left is None or right is None:
        return False
    if str(chain or "").upper() == "SOLANA":
        return left.strip() == right.strip()
    return left.strip().lower() == right.strip().lower()


def validate_bps(value: int, name: str, max_bps: int = 10_000) -> int:
    if value < 0 or value > max_bps:
        raise ValueError(f"{name} must be between 0 and {max_bps} bps")
    return value

