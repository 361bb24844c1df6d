"""Guardian key ceremony: verifiable secret sharing of the election keys."""

from .key_ceremony import (
    # Protocol
    Guardian,
    CeremonyStatus,

    # Data structures
    SchnorrProof,
    GuardianKeys,
    GuardianPublicView,
    GuardianEncryptedShare,
    GuardianSecretShares,
    ElectionPublicKeys,
    GuardianRecord,

    # Shared derivations
    evaluate_polynomial,
    feldman_commitment_product,
    compute_key_proof_challenge,
    compute_guardian_record_hash,

    # Exceptions
    KeyCeremonyError,
    KeyCeremonyStateError,
    ShareDecryptionFailed,
    ShareVerificationFailed,
    GuardianRecordMismatch,
)

__all__ = [
    'Guardian',
    'CeremonyStatus',
    'SchnorrProof',
    'GuardianKeys',
    'GuardianPublicView',
    'GuardianEncryptedShare',
    'GuardianSecretShares',
    'ElectionPublicKeys',
    'GuardianRecord',
    'evaluate_polynomial',
    'feldman_commitment_product',
    'compute_key_proof_challenge',
    'compute_guardian_record_hash',
    'KeyCeremonyError',
    'KeyCeremonyStateError',
    'ShareDecryptionFailed',
    'ShareVerificationFailed',
    'GuardianRecordMismatch',
]
