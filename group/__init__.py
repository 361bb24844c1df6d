"""Group arithmetic, election parameters and the domain-separated hash."""

from .group_arithmetic import (
    # Constants
    P_BYTES,
    Q_BYTES,
    HASH_BYTES,

    # Field elements
    ElementModP,
    ElementModQ,
    KeyPair,
    int_to_bytes,
    xor_bytes,

    # Parameters
    CryptographicParameters,
    GuardianParameters,
    ElectionParameters,

    # Hashing
    DomainHash,
    compute_parameter_base_hash,
    compute_election_base_hash,
    compute_extended_base_hash,

    # Exceptions
    ElectionGuardError,
    InvalidInputError,
)

__version__ = "2.1.0"

__all__ = [
    'P_BYTES',
    'Q_BYTES',
    'HASH_BYTES',
    'ElementModP',
    'ElementModQ',
    'KeyPair',
    'int_to_bytes',
    'xor_bytes',
    'CryptographicParameters',
    'GuardianParameters',
    'ElectionParameters',
    'DomainHash',
    'compute_parameter_base_hash',
    'compute_election_base_hash',
    'compute_extended_base_hash',
    'ElectionGuardError',
    'InvalidInputError',
]
