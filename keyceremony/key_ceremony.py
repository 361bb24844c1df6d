"""
Guardian Key Ceremony
=====================
Feldman verifiable secret sharing of the two election secrets (vote
encryption and auxiliary ballot data). Every guardian commits to the
coefficients of two degree k-1 polynomials, proves knowledge of them with a
combined Schnorr proof, and sends each peer an encrypted evaluation of both
polynomials under a Diffie-Hellman derived keystream.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from cryptography.hazmat.primitives import constant_time

from group.group_arithmetic import (
    Q_BYTES,
    TAG_GUARDIAN_RECORD,
    TAG_KEY_PROOF,
    TAG_SHARE_KEY,
    TAG_SHARE_PROOF,
    CryptographicParameters,
    DomainHash,
    ElectionGuardError,
    ElectionParameters,
    ElementModP,
    ElementModQ,
    GuardianParameters,
    KeyPair,
    int_to_bytes,
    xor_bytes,
)

logger = logging.getLogger(__name__)

VOTE_KEY_LABEL = "pk_vote"
DATA_KEY_LABEL = "pk_data"
SHARE_CIPHERTEXT_BYTES = 2 * Q_BYTES

# ============================================================================
# EXCEPTIONS AND ENUMS
# ============================================================================


class KeyCeremonyError(ElectionGuardError):
    """Base exception for key ceremony failures"""
    pass


class KeyCeremonyStateError(KeyCeremonyError):
    """Raised when a ceremony step is called out of order"""
    pass


class ShareDecryptionFailed(KeyCeremonyError):
    """Raised when an encrypted share fails its proof or cannot be opened"""

    def __init__(self, source_index: int, message: Optional[str] = None):
        self.source_index = source_index
        super().__init__(
            message or f"Could not decrypt shares from guardian {source_index}")


class ShareVerificationFailed(KeyCeremonyError):
    """Raised when a decrypted share does not match the sender's commitments"""

    def __init__(self, peer_index: int, message: Optional[str] = None):
        self.peer_index = peer_index
        super().__init__(
            message or f"Share from guardian {peer_index} does not match its commitments")


class GuardianRecordMismatch(KeyCeremonyError):
    """Raised when the finalized record differs from what a guardian received"""

    def __init__(self, guardian_index: Optional[int], message: str):
        self.guardian_index = guardian_index
        super().__init__(message)


class CeremonyStatus(Enum):
    """Per-guardian ceremony states"""
    UNINITIALIZED = "uninitialized"
    KEYS_GENERATED = "keys_generated"
    SHARES_ENCRYPTED = "shares_encrypted"
    SHARES_DECRYPTED = "shares_decrypted"
    VERIFIED = "verified"


# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class SchnorrProof:
    """Combined proof of knowledge for k coefficients plus the communication key"""
    challenge: ElementModQ
    responses: Tuple[ElementModQ, ...]


@dataclass(frozen=True)
class GuardianPublicView:
    index: int
    vote_commitments: Tuple[ElementModP, ...]
    data_commitments: Tuple[ElementModP, ...]
    communication_key: ElementModP
    vote_proof: SchnorrProof
    data_proof: SchnorrProof


@dataclass
class GuardianKeys:
    """Secret key material owned by exactly one guardian. Never serialized."""
    index: int
    vote_keys: List[KeyPair]
    data_keys: List[KeyPair]
    communication_key: KeyPair
    vote_proof: SchnorrProof
    data_proof: SchnorrProof

    def to_public_view(self) -> GuardianPublicView:
        return GuardianPublicView(
            index=self.index,
            vote_commitments=tuple(kp.public_key for kp in self.vote_keys),
            data_commitments=tuple(kp.public_key for kp in self.data_keys),
            communication_key=self.communication_key.public_key,
            vote_proof=self.vote_proof,
            data_proof=self.data_proof,
        )


@dataclass(frozen=True)
class GuardianEncryptedShare:
    source_index: int
    destination_index: int
    c0: ElementModP
    c1: bytes
    challenge: ElementModQ
    response: ElementModQ


@dataclass(frozen=True)
class GuardianSecretShares:
    """z_i and z_hat_i: this guardian's shares of the two joint secrets"""
    index: int
    vote_share: ElementModQ
    data_share: ElementModQ


@dataclass(frozen=True)
class ElectionPublicKeys:
    vote_key: ElementModP
    data_key: ElementModP

    @classmethod
    def from_public_views(cls, views: Sequence[GuardianPublicView]) -> 'ElectionPublicKeys':
        """Product of every guardian's constant-term commitment"""
        if not views:
            raise KeyCeremonyError("Cannot form election keys without guardians")
        vote_key = views[0].vote_commitments[0]
        data_key = views[0].data_commitments[0]
        for view in views[1:]:
            vote_key = vote_key * view.vote_commitments[0]
            data_key = data_key * view.data_commitments[0]
        return cls(vote_key=vote_key, data_key=data_key)


@dataclass(frozen=True)
class GuardianRecord:
    cryptographic_parameters: CryptographicParameters
    guardian_parameters: GuardianParameters
    parameter_base_hash: bytes
    guardians: Tuple[GuardianPublicView, ...]
    election_public_keys: ElectionPublicKeys

    @classmethod
    def create(cls, params: ElectionParameters, views: Sequence[GuardianPublicView]) -> 'GuardianRecord':
        ordered = tuple(sorted(views, key=lambda view: view.index))
        return cls(
            cryptographic_parameters=params.cryptographic,
            guardian_parameters=params.guardians,
            parameter_base_hash=params.parameter_base_hash,
            guardians=ordered,
            election_public_keys=ElectionPublicKeys.from_public_views(ordered),
        )

    def guardian(self, index: int) -> GuardianPublicView:
        for view in self.guardians:
            if view.index == index:
                return view
        raise GuardianRecordMismatch(index, f"Guardian {index} is missing from the record")


# ============================================================================
# SHARED DERIVATIONS
# ============================================================================


def evaluate_polynomial(coefficients: Sequence[ElementModQ], x: int, q: int) -> ElementModQ:
    """Evaluate sum(a_j * x^j) mod q, accumulating powers of x"""
    result = ElementModQ(0, q)
    x_power = 1
    for coeff in coefficients:
        result = result + coeff * x_power
        x_power = (x_power * x) % q
    return result


def feldman_commitment_product(params: ElectionParameters, commitments: Sequence[ElementModP], x: int) -> ElementModP:
    """prod(K_m ^ (x^m)), which equals g^P(x) for an honest dealer"""
    expected = params.one_p()
    x_power = 1
    for commitment in commitments:
        expected = expected * (commitment ** x_power)
        x_power = (x_power * x) % params.q
    return expected


def compute_key_proof_challenge(
    params: ElectionParameters,
    label: str,
    guardian_index: int,
    commitments: Sequence[ElementModP],
    communication_key: ElementModP,
    h_values: Sequence[ElementModP],
) -> ElementModQ:
    return params.hash_to_q(
        params.parameter_base_hash,
        TAG_KEY_PROOF,
        label,
        int_to_bytes(guardian_index),
        *commitments,
        communication_key,
        *h_values,
    )


def compute_share_key(
    params: ElectionParameters,
    source_index: int,
    destination_index: int,
    destination_key: ElementModP,
    alpha: ElementModP,
    beta: ElementModP,
) -> bytes:
    return DomainHash.hash(
        params.parameter_base_hash,
        TAG_SHARE_KEY,
        int_to_bytes(source_index),
        int_to_bytes(destination_index),
        destination_key,
        alpha,
        beta,
    )


def compute_share_keystreams(share_key: bytes, source_index: int, destination_index: int) -> Tuple[bytes, bytes]:
    def block(block_index: int) -> bytes:
        return DomainHash.hash(
            share_key,
            bytes([block_index]),
            "share_enc_keys",
            b'\x00',
            "share_encrypt",
            int_to_bytes(source_index),
            int_to_bytes(destination_index),
            b'\x02\x00',
        )

    return block(1), block(2)


def compute_share_challenge(
    params: ElectionParameters,
    source_index: int,
    destination_index: int,
    gamma: ElementModP,
    c0: ElementModP,
    c1: bytes,
) -> ElementModQ:
    return params.hash_to_q(
        params.parameter_base_hash,
        TAG_SHARE_PROOF,
        int_to_bytes(source_index),
        int_to_bytes(destination_index),
        gamma,
        c0,
        c1,
    )


def compute_guardian_record_hash(
    params: ElectionParameters,
    election_public_keys: ElectionPublicKeys,
    views: Sequence[GuardianPublicView],
) -> bytes:
    ordered = sorted(views, key=lambda view: view.index)
    return DomainHash.hash(
        params.parameter_base_hash,
        TAG_GUARDIAN_RECORD,
        election_public_keys.vote_key,
        election_public_keys.data_key,
        *[c for view in ordered for c in view.vote_commitments],
        *[c for view in ordered for c in view.data_commitments],
        *[view.communication_key for view in ordered],
    )


# ============================================================================
# GUARDIAN
# ============================================================================


class Guardian:
    """One key ceremony participant.

    Steps run in order: generate_keys, encrypt_shares (after every public
    view has been collected), decrypt_shares (after every share addressed to
    this guardian has been collected), verify (against the finalized record).
    """

    def __init__(self, index: int, params: ElectionParameters):
        if not 1 <= index <= params.n:
            raise KeyCeremonyError(
                f"Guardian index must be between 1 and {params.n}, got {index}")

        self.index = index
        self.params = params
        self.status = CeremonyStatus.UNINITIALIZED

        self._keys: Optional[GuardianKeys] = None
        self._received_views: Dict[int, GuardianPublicView] = {}
        self._vote_evaluations: Dict[int, ElementModQ] = {}
        self._data_evaluations: Dict[int, ElementModQ] = {}
        self._secret_shares: Optional[GuardianSecretShares] = None

    @property
    def keys(self) -> GuardianKeys:
        if self._keys is None:
            raise KeyCeremonyStateError(f"Guardian {self.index} has not generated keys")
        return self._keys

    @property
    def secret_shares(self) -> GuardianSecretShares:
        if self._secret_shares is None:
            raise KeyCeremonyStateError(f"Guardian {self.index} has not decrypted its shares")
        return self._secret_shares

    def public_view(self) -> GuardianPublicView:
        return self.keys.to_public_view()

    def reset(self):
        """Discard all key material and return to the initial state"""
        self._keys = None
        self._received_views = {}
        self._vote_evaluations = {}
        self._data_evaluations = {}
        self._secret_shares = None
        self.status = CeremonyStatus.UNINITIALIZED
        logger.info(f"Guardian {self.index} reset")

    def _require(self, *allowed: CeremonyStatus, action: str):
        if self.status not in allowed:
            raise KeyCeremonyStateError(
                f"Guardian {self.index} cannot {action} in state {self.status.value}")

    # ------------------------------------------------------------------
    # Key generation
    # ------------------------------------------------------------------

    def generate_keys(self) -> GuardianKeys:
        self._require(CeremonyStatus.UNINITIALIZED, action="generate keys")

        vote_keys = [self.params.random_keypair() for _ in range(self.params.k)]
        data_keys = [self.params.random_keypair() for _ in range(self.params.k)]
        communication_key = self.params.random_keypair()

        self._keys = GuardianKeys(
            index=self.index,
            vote_keys=vote_keys,
            data_keys=data_keys,
            communication_key=communication_key,
            vote_proof=self._generate_key_proof(vote_keys, communication_key, VOTE_KEY_LABEL),
            data_proof=self._generate_key_proof(data_keys, communication_key, DATA_KEY_LABEL),
        )
        self.status = CeremonyStatus.KEYS_GENERATED

        logger.info(
            f"Guardian {self.index} generated {self.params.k} coefficients per key with proofs")
        return self._keys

    def _generate_key_proof(self, key_pairs: List[KeyPair], communication_key: KeyPair, label: str) -> SchnorrProof:
        nonces = [self.params.random_keypair() for _ in range(self.params.k + 1)]
        challenge = compute_key_proof_challenge(
            self.params,
            label,
            self.index,
            [kp.public_key for kp in key_pairs],
            communication_key.public_key,
            [nonce.public_key for nonce in nonces],
        )

        proven_secrets = [kp.secret_key for kp in key_pairs] + [communication_key.secret_key]
        responses = tuple(
            nonce.secret_key - challenge * secret
            for nonce, secret in zip(nonces, proven_secrets)
        )
        return SchnorrProof(challenge=challenge, responses=responses)

    # ------------------------------------------------------------------
    # Share exchange
    # ------------------------------------------------------------------

    def encrypt_shares(self, peers: Sequence[GuardianPublicView]) -> List[GuardianEncryptedShare]:
        """Encrypt this guardian's polynomial evaluations to every peer"""
        self._require(CeremonyStatus.KEYS_GENERATED, action="encrypt shares")

        views = {view.index: view for view in peers}
        views[self.index] = self.public_view()
        missing = set(range(1, self.params.n + 1)) - set(views)
        if missing:
            raise KeyCeremonyError(
                f"Guardian {self.index} is missing public views from guardians {sorted(missing)}")
        self._received_views = views

        shares = [
            self._encrypt_share(views[peer_index])
            for peer_index in sorted(views)
            if peer_index != self.index
        ]

        self._vote_evaluations = {self.index: self._evaluate(self.keys.vote_keys, self.index)}
        self._data_evaluations = {self.index: self._evaluate(self.keys.data_keys, self.index)}
        self.status = CeremonyStatus.SHARES_ENCRYPTED

        logger.info(f"Guardian {self.index} encrypted {len(shares)} shares")
        return shares

    def _evaluate(self, key_pairs: List[KeyPair], x: int) -> ElementModQ:
        return evaluate_polynomial([kp.secret_key for kp in key_pairs], x, self.params.q)

    def _encrypt_share(self, peer: GuardianPublicView) -> GuardianEncryptedShare:
        ephemeral = self.params.random_keypair()
        alpha = ephemeral.public_key
        beta = peer.communication_key ** ephemeral.secret_key

        share_key = compute_share_key(
            self.params, self.index, peer.index, peer.communication_key, alpha, beta)
        k1, k2 = compute_share_keystreams(share_key, self.index, peer.index)

        vote_value = self._evaluate(self.keys.vote_keys, peer.index)
        data_value = self._evaluate(self.keys.data_keys, peer.index)
        c1 = xor_bytes(vote_value.to_bytes(), k1) + xor_bytes(data_value.to_bytes(), k2)

        proof_nonce = self.params.random_keypair()
        challenge = compute_share_challenge(
            self.params, self.index, peer.index, proof_nonce.public_key, alpha, c1)
        response = proof_nonce.secret_key - challenge * ephemeral.secret_key

        return GuardianEncryptedShare(
            source_index=self.index,
            destination_index=peer.index,
            c0=alpha,
            c1=c1,
            challenge=challenge,
            response=response,
        )

    def decrypt_shares(self, received: Sequence[GuardianEncryptedShare]) -> GuardianSecretShares:
        """Open every share addressed to this guardian and sum them into z_i, z_hat_i"""
        self._require(CeremonyStatus.SHARES_ENCRYPTED, action="decrypt shares")

        expected_sources = set(self._received_views) - {self.index}
        by_source: Dict[int, GuardianEncryptedShare] = {}
        for share in received:
            if share.destination_index != self.index:
                raise ShareDecryptionFailed(
                    share.source_index,
                    f"Share from guardian {share.source_index} is addressed to guardian {share.destination_index}")
            if share.source_index not in expected_sources:
                raise ShareDecryptionFailed(
                    share.source_index,
                    f"Unexpected share from guardian {share.source_index}")
            if share.source_index in by_source:
                raise ShareDecryptionFailed(
                    share.source_index,
                    f"Duplicate share from guardian {share.source_index}")
            by_source[share.source_index] = share

        missing = expected_sources - set(by_source)
        if missing:
            raise KeyCeremonyError(
                f"Guardian {self.index} is missing shares from guardians {sorted(missing)}")

        for source_index in sorted(by_source):
            vote_value, data_value = self._decrypt_share(by_source[source_index])
            self._vote_evaluations[source_index] = vote_value
            self._data_evaluations[source_index] = data_value

        self._secret_shares = GuardianSecretShares(
            index=self.index,
            vote_share=sum(self._vote_evaluations.values(), self.params.zero_q()),
            data_share=sum(self._data_evaluations.values(), self.params.zero_q()),
        )
        self.status = CeremonyStatus.SHARES_DECRYPTED

        logger.info(
            f"Guardian {self.index} decrypted shares from {len(by_source)} peers")
        return self._secret_shares

    def _decrypt_share(self, share: GuardianEncryptedShare) -> Tuple[ElementModQ, ElementModQ]:
        if len(share.c1) != SHARE_CIPHERTEXT_BYTES:
            raise ShareDecryptionFailed(
                share.source_index,
                f"Share from guardian {share.source_index} has {len(share.c1)} ciphertext bytes")

        gamma = self.params.g_pow(share.response) * (share.c0 ** share.challenge)
        challenge = compute_share_challenge(
            self.params, share.source_index, self.index, gamma, share.c0, share.c1)
        if not constant_time.bytes_eq(challenge.to_bytes(), share.challenge.to_bytes()):
            logger.error(
                f"Guardian {self.index}: proof on share from guardian {share.source_index} failed")
            raise ShareDecryptionFailed(share.source_index)

        communication_key = self.keys.communication_key
        beta = share.c0 ** communication_key.secret_key
        share_key = compute_share_key(
            self.params, share.source_index, self.index, communication_key.public_key, share.c0, beta)
        k1, k2 = compute_share_keystreams(share_key, share.source_index, self.index)

        plaintext = xor_bytes(share.c1, k1 + k2)
        return (
            ElementModQ.from_bytes(plaintext[:Q_BYTES], self.params.q),
            ElementModQ.from_bytes(plaintext[Q_BYTES:], self.params.q),
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, record: GuardianRecord):
        """Check the finalized record against what this guardian received.

        Raises GuardianRecordMismatch on any substitution, a tagged
        VerificationFailed for checks 1 to 3, and ShareVerificationFailed
        when a decrypted share does not open the sender's commitments.
        """
        self._require(CeremonyStatus.SHARES_DECRYPTED, CeremonyStatus.VERIFIED,
                      action="verify the guardian record")

        from verify.verification import (
            ElectionPublicKeyVerification,
            GuardianPublicKeyVerification,
            ParameterVerification,
        )

        self._compare_record(record)

        ParameterVerification(self.params).verify(
            record.cryptographic_parameters, record.guardian_parameters, record.parameter_base_hash)
        GuardianPublicKeyVerification(self.params).verify(record.guardians)
        ElectionPublicKeyVerification(self.params).verify(
            record.guardians, record.election_public_keys)

        for source_index in sorted(self._vote_evaluations):
            view = record.guardian(source_index)
            self._check_share(source_index, self._vote_evaluations[source_index], view.vote_commitments)
            self._check_share(source_index, self._data_evaluations[source_index], view.data_commitments)

        self.status = CeremonyStatus.VERIFIED
        logger.info(f"Guardian {self.index} verified the guardian record")

    def _compare_record(self, record: GuardianRecord):
        original_views = [self._received_views[i] for i in sorted(self._received_views)]
        original_keys = ElectionPublicKeys.from_public_views(original_views)

        expected = compute_guardian_record_hash(self.params, original_keys, original_views)
        actual = compute_guardian_record_hash(self.params, record.election_public_keys, record.guardians)
        if constant_time.bytes_eq(expected, actual) and len(record.guardians) == len(original_views):
            return

        record_views = {view.index: view for view in record.guardians}
        for index, view in sorted(self._received_views.items()):
            if record_views.get(index) != view:
                logger.error(f"Guardian {self.index}: record entry for guardian {index} was substituted")
                raise GuardianRecordMismatch(
                    index, f"Record entry for guardian {index} differs from the view originally received")

        extra = sorted(set(record_views) - set(self._received_views))
        if extra:
            raise GuardianRecordMismatch(extra[0], f"Record contains unknown guardian {extra[0]}")

        raise GuardianRecordMismatch(
            None, "Election public keys in the record do not match the received commitments")

    def _check_share(self, source_index: int, value: ElementModQ, commitments: Sequence[ElementModP]):
        expected = feldman_commitment_product(self.params, commitments, self.index)
        if self.params.g_pow(value) != expected:
            logger.error(
                f"Guardian {self.index}: share from guardian {source_index} failed the Feldman check")
            raise ShareVerificationFailed(source_index)
