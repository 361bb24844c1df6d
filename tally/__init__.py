"""Homomorphic tally aggregation and threshold decryption."""

from .tally_decryption import (
    EncryptedTally,
    PartialTallyDecryption,
    DecryptedTally,
    TallyGuardian,
    TallyAdmin,
    lagrange_coefficient,
    TallyError,
    TallyDecryptionFailed,
)

__all__ = [
    'EncryptedTally',
    'PartialTallyDecryption',
    'DecryptedTally',
    'TallyGuardian',
    'TallyAdmin',
    'lagrange_coefficient',
    'TallyError',
    'TallyDecryptionFailed',
]
