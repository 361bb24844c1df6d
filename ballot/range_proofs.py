"""
ElGamal Encryption and Range Proofs
===================================
Exponential ElGamal over the order-q subgroup, disjunctive Chaum-Pedersen
proofs that a ciphertext encrypts a value in [0, limit], and the Schnorr
commitment recovery shared by the auxiliary-data proofs. Used by both the
encryptor and the verifier so the two derive challenges identically.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from group.group_arithmetic import (
    TAG_RANGE_PROOF,
    ElectionGuardError,
    ElectionParameters,
    ElementModP,
    ElementModQ,
    HashInput,
    InvalidInputError,
)

logger = logging.getLogger(__name__)


class DecryptionError(ElectionGuardError):
    """Raised when a ciphertext does not open to a value within bounds"""
    pass


@dataclass(frozen=True)
class ElGamalCiphertext:
    alpha: ElementModP
    beta: ElementModP

    @classmethod
    def identity(cls, params: ElectionParameters) -> 'ElGamalCiphertext':
        return cls(alpha=params.one_p(), beta=params.one_p())

    def __mul__(self, other: 'ElGamalCiphertext') -> 'ElGamalCiphertext':
        """Homomorphic addition of the encrypted values"""
        if not isinstance(other, ElGamalCiphertext):
            return NotImplemented
        return ElGamalCiphertext(alpha=self.alpha * other.alpha, beta=self.beta * other.beta)

    def __pow__(self, exponent: int) -> 'ElGamalCiphertext':
        """Homomorphic scaling of the encrypted value"""
        return ElGamalCiphertext(alpha=self.alpha ** exponent, beta=self.beta ** exponent)


@dataclass(frozen=True)
class ChallengeResponse:
    challenge: ElementModQ
    response: ElementModQ


@dataclass(frozen=True)
class RangeProof:
    """One challenge/response pair per candidate value 0..limit"""
    pairs: Tuple[ChallengeResponse, ...]

    @property
    def limit(self) -> int:
        return len(self.pairs) - 1


def elgamal_encrypt(params: ElectionParameters, public_key: ElementModP, value: int, nonce: ElementModQ) -> ElGamalCiphertext:
    """alpha = g^xi, beta = K^(xi + value)"""
    return ElGamalCiphertext(
        alpha=params.g_pow(nonce),
        beta=public_key ** (nonce + value),
    )


def elgamal_decrypt_with_nonce(
    params: ElectionParameters,
    public_key: ElementModP,
    ciphertext: ElGamalCiphertext,
    nonce: ElementModQ,
    limit: int,
) -> int:
    target = ciphertext.beta / (public_key ** nonce)
    candidate = params.one_p()
    for value in range(limit + 1):
        if candidate == target:
            return value
        candidate = candidate * public_key
    raise DecryptionError(f"Ciphertext does not encrypt a value in [0, {limit}]")


def range_proof_challenge(
    params: ElectionParameters,
    key: bytes,
    header: Sequence[HashInput],
    ciphertext: ElGamalCiphertext,
    commitments: Sequence[Tuple[ElementModP, ElementModP]],
) -> ElementModQ:
    """H_q(key; 0x24, header..., alpha, beta, a_0, b_0, a_1, b_1, ...)"""
    parts: List[HashInput] = [TAG_RANGE_PROOF, *header, ciphertext.alpha, ciphertext.beta]
    for a, b in commitments:
        parts.append(a)
        parts.append(b)
    return params.hash_to_q(key, *parts)


def make_range_proof(
    params: ElectionParameters,
    key: bytes,
    header: Sequence[HashInput],
    ciphertext: ElGamalCiphertext,
    nonce: ElementModQ,
    value: int,
    limit: int,
    public_key: ElementModP,
) -> RangeProof:
    """Disjunctive Chaum-Pedersen proof that ciphertext encrypts value in [0, limit].

    Every branch j != value is simulated from a random challenge c_j and a
    random u_j. The real branch receives whatever challenge remains after
    subtracting the simulated ones from the Fiat-Shamir challenge.
    """
    if not 0 <= value <= limit:
        raise InvalidInputError(f"Value {value} outside proof range [0, {limit}]")

    commitments: List[Tuple[ElementModP, ElementModP]] = []
    simulated: Dict[int, Tuple[ElementModQ, ElementModQ]] = {}
    u = params.random_q()

    for j in range(limit + 1):
        if j == value:
            commitments.append((params.g_pow(u), public_key ** u))
        else:
            c_j = params.random_q()
            u_j = params.random_q()
            commitments.append((params.g_pow(u_j), public_key ** (u_j + (value - j) * c_j)))
            simulated[j] = (c_j, u_j)

    challenge = range_proof_challenge(params, key, header, ciphertext, commitments)
    real_challenge = challenge - sum((c_j for c_j, _ in simulated.values()), params.zero_q())

    pairs = []
    for j in range(limit + 1):
        if j == value:
            pairs.append(ChallengeResponse(real_challenge, u - real_challenge * nonce))
        else:
            c_j, u_j = simulated[j]
            pairs.append(ChallengeResponse(c_j, u_j - c_j * nonce))

    return RangeProof(pairs=tuple(pairs))


def recompute_range_commitments(
    params: ElectionParameters,
    public_key: ElementModP,
    ciphertext: ElGamalCiphertext,
    proof: RangeProof,
) -> List[Tuple[ElementModP, ElementModP]]:
    """a_j = g^v_j * alpha^c_j, b_j = K^(v_j - j*c_j) * beta^c_j"""
    commitments = []
    for j, pair in enumerate(proof.pairs):
        a = params.g_pow(pair.response) * (ciphertext.alpha ** pair.challenge)
        w = pair.response - j * pair.challenge
        b = (public_key ** w) * (ciphertext.beta ** pair.challenge)
        commitments.append((a, b))
    return commitments


def sum_challenges(params: ElectionParameters, proof: RangeProof) -> ElementModQ:
    return sum((pair.challenge for pair in proof.pairs), params.zero_q())


def verify_range_proof(
    params: ElectionParameters,
    key: bytes,
    header: Sequence[HashInput],
    ciphertext: ElGamalCiphertext,
    proof: RangeProof,
    public_key: ElementModP,
    limit: int,
) -> bool:
    if proof.limit != limit:
        return False
    commitments = recompute_range_commitments(params, public_key, ciphertext, proof)
    challenge = range_proof_challenge(params, key, header, ciphertext, commitments)
    return sum_challenges(params, proof) == challenge


def schnorr_commitment(
    params: ElectionParameters,
    public_key: ElementModP,
    challenge: ElementModQ,
    response: ElementModQ,
) -> ElementModP:
    """Recover g^u from a Schnorr proof (c, v = u - c*secret) on public_key = g^secret"""
    return params.g_pow(response) * (public_key ** challenge)
