"""Ballot model, ElGamal range proofs, and ballot encryption."""

from .election_models import (
    ChainingMode,
    Choice,
    Contest,
    BallotStyle,
    Manifest,
    BallotChoice,
    BallotContest,
    Ballot,
)

from .range_proofs import (
    ElGamalCiphertext,
    ChallengeResponse,
    RangeProof,
    DecryptionError,
    elgamal_encrypt,
    elgamal_decrypt_with_nonce,
    make_range_proof,
    verify_range_proof,
)

from .ballot_encryption import (
    # Encryptor
    BallotEncryptor,
    EncryptionRecord,

    # Encrypted structures
    EncryptedSelection,
    EncryptedValueWithProofs,
    EncryptedData,
    EncryptedBallotNonce,
    EncryptedContest,
    EncryptedBallot,

    # Nonce openers
    decrypt_ballot_nonce,
    decrypt_contest_data,

    # Validation
    BallotValidationResult,
    ValidationError,
    BallotEncryptionError,
)

__all__ = [
    'ChainingMode',
    'Choice',
    'Contest',
    'BallotStyle',
    'Manifest',
    'BallotChoice',
    'BallotContest',
    'Ballot',
    'ElGamalCiphertext',
    'ChallengeResponse',
    'RangeProof',
    'DecryptionError',
    'elgamal_encrypt',
    'elgamal_decrypt_with_nonce',
    'make_range_proof',
    'verify_range_proof',
    'BallotEncryptor',
    'EncryptionRecord',
    'EncryptedSelection',
    'EncryptedValueWithProofs',
    'EncryptedData',
    'EncryptedBallotNonce',
    'EncryptedContest',
    'EncryptedBallot',
    'decrypt_ballot_nonce',
    'decrypt_contest_data',
    'BallotValidationResult',
    'ValidationError',
    'BallotEncryptionError',
]
