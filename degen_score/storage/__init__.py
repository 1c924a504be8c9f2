"""
Persistence for verification records and cached provider payloads.
"""

from .database import Base, Database
from .models import CacheRecord, ChallengeRecord, VerifiedAddressRecord
from .repository import CacheRepository, VerificationRepository

__all__ = [
    "Base",
    "Database",
    "CacheRecord",
    "ChallengeRecord",
    "VerifiedAddressRecord",
    "CacheRepository",
    "VerificationRepository",
]
