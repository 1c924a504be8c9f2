"""
Signature verification per chain family.

EVM:    EIP-191 personal_sign, signer recovered with eth_account
Solana: Ed25519 over the raw UTF-8 message bytes, checked with solders

Both raise VerificationFailedError and never return False.
"""

import logging
import re

import base58
from eth_account import Account
from eth_account.messages import encode_defunct
from solders.pubkey import Pubkey
from solders.signature import Signature

from ..exceptions import FailureReason, VerificationFailedError
from ..models import Address


logger = logging.getLogger(__name__)


_EVM_SIGNATURE_RE = re.compile(r"^(0x)?[0-9a-fA-F]{130}$")
_HEX_SIGNATURE_RE = re.compile(r"^(0x)?[0-9a-fA-F]{128}$")

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def _malformed(address: Address, reason: str) -> VerificationFailedError:
    return VerificationFailedError(
        FailureReason.MALFORMED_SIGNATURE,
        f"Malformed {address.chain.value} signature: {reason}",
        address.chain,
    )


def _mismatch(address: Address) -> VerificationFailedError:
    return VerificationFailedError(
        FailureReason.SIGNER_MISMATCH,
        f"Signature was not produced by {address.value}",
        address.chain,
        {"address": address.value},
    )


def recover_evm_signer(message: str, signature: str) -> str:
    """Lowercase address that produced an EIP-191 signature of `message`."""
    candidate = signature.strip()
    if not _EVM_SIGNATURE_RE.match(candidate):
        raise ValueError("expected 65 bytes of hex")
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate

    # personal_sign produces v in {27, 28} and low-s (EIP-2)
    v = int(candidate[130:132], 16)
    if v not in (27, 28):
        raise ValueError(f"recovery byte must be 27 or 28, got {v}")
    if int(candidate[66:130], 16) > SECP256K1_N // 2:
        raise ValueError("s value is not canonical")

    signer = Account.recover_message(encode_defunct(text=message), signature=candidate)
    return signer.lower()


def verify_evm_signature(address: Address, message: str, signature: str) -> None:
    try:
        signer = recover_evm_signer(message, signature)
    except Exception as e:
        # Bad v/r/s raise ValueError or eth_keys BadSignature
        raise _malformed(address, str(e)) from e

    if signer != address.value.lower():
        raise _mismatch(address)


def _parse_solana_signature(signature: str) -> Signature:
    candidate = signature.strip()
    if _HEX_SIGNATURE_RE.match(candidate):
        return Signature.from_bytes(bytes.fromhex(candidate.removeprefix("0x")))
    raw = base58.b58decode(candidate)
    if len(raw) != 64:
        raise ValueError(f"expected 64 signature bytes, got {len(raw)}")
    return Signature.from_bytes(raw)


def verify_solana_signature(address: Address, message: str, signature: str) -> None:
    try:
        parsed = _parse_solana_signature(signature)
        pubkey = Pubkey.from_string(address.value)
    except ValueError as e:
        raise _malformed(address, str(e)) from e

    if not parsed.verify(pubkey, message.encode("utf-8")):
        raise _mismatch(address)


def verify_signature(address: Address, message: str, signature: str) -> None:
    """Raise unless `signature` over `message` was produced by `address`."""
    if not isinstance(signature, str) or not signature.strip():
        raise _malformed(address, "empty signature")

    if address.chain.is_evm:
        verify_evm_signature(address, message, signature)
    else:
        verify_solana_signature(address, message, signature)
    logger.debug(f"[{address.chain.value}] Signature valid for {address.value}")
