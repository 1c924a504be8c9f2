"""
Verification messages and nonces.

The message is identical for every chain family; only its signature
scheme differs.
"""

import secrets
from decimal import Decimal

from ..models import Address


VERIFICATION_MESSAGE_TEMPLATE = (
    "I verify that I own wallet {address} for {platform_name} Degen Score "
    "(nonce: {nonce}). This signature does NOT grant any permissions or approvals."
)

NONCE_BYTES = 16


def generate_nonce() -> str:
    """Cryptographically random, URL-safe nonce."""
    return secrets.token_hex(NONCE_BYTES)


def format_verification_message(address: Address, nonce: str, platform_name: str) -> str:
    return VERIFICATION_MESSAGE_TEMPLATE.format(
        address=address.value,
        platform_name=platform_name,
        nonce=nonce,
    )


def format_deposit_instructions(
    address: Address,
    deposit_address: str,
    min_amount: Decimal,
) -> str:
    return (
        f"Send at least {min_amount} {address.chain.native_symbol} from {address.value} "
        f"to {deposit_address} on {address.chain.value} to verify ownership. "
        f"The deposit minus network fees is refundable."
    )
