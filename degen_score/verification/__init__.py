"""
Ownership verification: signed messages and micro-deposits.
"""

from .deposit import (
    CHAIN_FEES,
    DepositAccount,
    DepositVerificationResult,
    DepositVerifier,
    ObservedDeposit,
    calculate_refund,
    create_deposit_account,
    deposit_window_blocks,
)
from .messages import VERIFICATION_MESSAGE_TEMPLATE, format_verification_message, generate_nonce
from .protocol import VerificationProtocol
from .signatures import recover_evm_signer, verify_signature

__all__ = [
    "CHAIN_FEES",
    "DepositAccount",
    "DepositVerificationResult",
    "DepositVerifier",
    "ObservedDeposit",
    "calculate_refund",
    "create_deposit_account",
    "deposit_window_blocks",
    "VERIFICATION_MESSAGE_TEMPLATE",
    "format_verification_message",
    "generate_nonce",
    "VerificationProtocol",
    "recover_evm_signer",
    "verify_signature",
]
