"""Election record verification: the nine re-derivation checks."""

from .verification import (
    # Suite
    VerificationSuite,
    VerificationReport,

    # Individual checks
    ParameterVerification,
    GuardianPublicKeyVerification,
    ElectionPublicKeyVerification,
    ExtendedBaseHashVerification,
    SelectionEncryptionIdentifierVerification,
    SelectionEncryptionsWellFormedVerification,
    AdherenceToVoteLimitsVerification,
    ConfirmationCodeVerification,
    BallotAggregationVerification,

    # Failures
    VerificationCheck,
    VerificationFailed,
)

__all__ = [
    'VerificationSuite',
    'VerificationReport',
    'ParameterVerification',
    'GuardianPublicKeyVerification',
    'ElectionPublicKeyVerification',
    'ExtendedBaseHashVerification',
    'SelectionEncryptionIdentifierVerification',
    'SelectionEncryptionsWellFormedVerification',
    'AdherenceToVoteLimitsVerification',
    'ConfirmationCodeVerification',
    'BallotAggregationVerification',
    'VerificationCheck',
    'VerificationFailed',
]
