"""
Ballot Encryption
=================
Validates plaintext ballots against the manifest and produces encrypted
ballots: one ElGamal ciphertext with a range proof per selection, an
aggregate proof per contest, optional encrypted metadata counters, optional
encrypted free-text contest data, the encrypted ballot nonce, and the
confirmation code that chains ballots cast on the same device.
"""

import logging
import secrets
from collections import Counter
from dataclasses import dataclass, field
from functools import reduce
from operator import mul
from typing import Dict, List, Optional, Sequence, Tuple

from group.group_arithmetic import (
    HASH_BYTES,
    TAG_BALLOT_NONCE_KEY,
    TAG_BALLOT_NONCE_PROOF,
    TAG_CONFIRMATION_CODE,
    TAG_CONTEST_DATA_KEY,
    TAG_CONTEST_DATA_PROOF,
    TAG_CONTEST_HASH,
    TAG_DEVICE_HASH,
    TAG_ENCRYPTION_NONCE,
    TAG_SELECTION_IDENTIFIER,
    DomainHash,
    ElectionGuardError,
    ElectionParameters,
    ElementModP,
    ElementModQ,
    HashInput,
    compute_election_base_hash,
    compute_extended_base_hash,
    int_to_bytes,
    xor_bytes,
)
from keyceremony.key_ceremony import ElectionPublicKeys, GuardianPublicView, GuardianRecord

from .election_models import Ballot, BallotContest, ChainingMode, Contest, Manifest
from .range_proofs import (
    ElGamalCiphertext,
    RangeProof,
    elgamal_encrypt,
    make_range_proof,
)

logger = logging.getLogger(__name__)

SELECTION_IDENTIFIER_BYTES = 32
BALLOT_NONCE_BYTES = 32
CONTEST_DATA_BLOCK_BYTES = 32

OVERVOTE_LABEL = "overvote"
NULLVOTE_LABEL = "nullvote"
UNDERVOTE_LABEL = "undervote"
WRITEIN_LABEL = "writein"
CONTEST_DATA_LABEL = "contest_data"

# ============================================================================
# EXCEPTIONS AND VALIDATION RESULTS
# ============================================================================


class BallotEncryptionError(ElectionGuardError):
    """Base exception for ballot encryption"""
    pass


class ValidationError(BallotEncryptionError):
    """A plaintext ballot does not conform to the manifest"""

    def __init__(self, contest_id: Optional[str], choice_id: Optional[str], reason: str):
        self.contest_id = contest_id
        self.choice_id = choice_id
        self.reason = reason
        location = "/".join(part for part in (contest_id, choice_id) if part)
        super().__init__(f"{location}: {reason}" if location else reason)


@dataclass
class BallotValidationResult:
    ballot_id: str
    errors: List[ValidationError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


# ============================================================================
# RECORDS
# ============================================================================


@dataclass(frozen=True)
class EncryptionRecord:
    """Everything a ballot encryptor or verifier needs about the election"""
    parameters: ElectionParameters
    manifest: Manifest
    guardians: Tuple[GuardianPublicView, ...]
    election_public_keys: ElectionPublicKeys
    election_base_hash: bytes
    extended_base_hash: bytes

    @classmethod
    def create(cls, params: ElectionParameters, manifest: Manifest, guardian_record: GuardianRecord) -> 'EncryptionRecord':
        keys = guardian_record.election_public_keys
        election_base_hash = compute_election_base_hash(
            params.parameter_base_hash, manifest.canonical_bytes())
        return cls(
            parameters=params,
            manifest=manifest,
            guardians=guardian_record.guardians,
            election_public_keys=keys,
            election_base_hash=election_base_hash,
            extended_base_hash=compute_extended_base_hash(
                election_base_hash, keys.vote_key, keys.data_key),
        )


@dataclass(frozen=True)
class EncryptedSelection:
    choice_id: str
    ciphertext: ElGamalCiphertext
    proof: RangeProof


@dataclass(frozen=True)
class EncryptedValueWithProofs:
    ciphertext: ElGamalCiphertext
    proof: RangeProof


@dataclass(frozen=True)
class EncryptedData:
    """Free-text contest data under the auxiliary key, with a Schnorr proof on the nonce"""
    c0: ElementModP
    c1: bytes
    challenge: ElementModQ
    response: ElementModQ


@dataclass(frozen=True)
class EncryptedBallotNonce:
    c0: ElementModP
    c1: bytes
    challenge: ElementModQ
    response: ElementModQ


@dataclass(frozen=True)
class EncryptedContest:
    id: str
    index: int
    selections: Tuple[EncryptedSelection, ...]
    proof: RangeProof
    overvote: Optional[EncryptedValueWithProofs]
    nullvote: Optional[EncryptedValueWithProofs]
    undervote: Optional[EncryptedValueWithProofs]
    writein: Optional[EncryptedValueWithProofs]
    contest_data: Optional[EncryptedData]
    contest_hash: bytes

    def aggregate(self) -> ElGamalCiphertext:
        return reduce(mul, (selection.ciphertext for selection in self.selections))

    def metadata(self) -> List[Tuple[str, EncryptedValueWithProofs]]:
        """Present metadata fields in hashing order"""
        fields = [
            (OVERVOTE_LABEL, self.overvote),
            (NULLVOTE_LABEL, self.nullvote),
            (UNDERVOTE_LABEL, self.undervote),
            (WRITEIN_LABEL, self.writein),
        ]
        return [(label, value) for label, value in fields if value is not None]


@dataclass(frozen=True)
class EncryptedBallot:
    id: str
    ballot_style_id: str
    device_id: str
    selection_identifier: bytes
    selection_identifier_hash: bytes
    contests: Tuple[EncryptedContest, ...]
    encrypted_ballot_nonce: EncryptedBallotNonce
    chaining_field: bytes
    confirmation_code: bytes
    weight: int = 1

    def contest(self, contest_id: str) -> EncryptedContest:
        for contest in self.contests:
            if contest.id == contest_id:
                return contest
        raise KeyError(contest_id)


# ============================================================================
# SHARED DERIVATIONS
# ============================================================================


def _is_count(value) -> bool:
    # bool is an int subclass but never a vote count
    return isinstance(value, int) and not isinstance(value, bool)


def compute_selection_identifier_hash(extended_base_hash: bytes, selection_identifier: bytes) -> bytes:
    return DomainHash.hash(extended_base_hash, TAG_SELECTION_IDENTIFIER, selection_identifier)


def compute_device_hash(extended_base_hash: bytes, device_id: str) -> bytes:
    encoded = device_id.encode('utf-8')
    return DomainHash.hash(extended_base_hash, TAG_DEVICE_HASH, int_to_bytes(len(encoded)), encoded)


def compute_selection_nonce(
    params: ElectionParameters,
    selection_identifier_hash: bytes,
    contest_index: int,
    choice_index: int,
    ballot_nonce: bytes,
) -> ElementModQ:
    return params.hash_to_q(
        selection_identifier_hash,
        TAG_ENCRYPTION_NONCE,
        int_to_bytes(contest_index),
        int_to_bytes(choice_index),
        ballot_nonce,
    )


def compute_contest_nonce(
    params: ElectionParameters,
    selection_identifier_hash: bytes,
    contest_index: int,
    label: str,
    ballot_nonce: bytes,
) -> ElementModQ:
    """Nonce for a contest-level field; the label keeps the fields apart"""
    return params.hash_to_q(
        selection_identifier_hash,
        TAG_ENCRYPTION_NONCE,
        int_to_bytes(contest_index),
        label,
        ballot_nonce,
    )


def selection_proof_header(contest_index: int, choice_index: int) -> List[HashInput]:
    return [int_to_bytes(contest_index), int_to_bytes(choice_index)]


def contest_proof_header(contest_index: int) -> List[HashInput]:
    return [int_to_bytes(contest_index)]


def metadata_proof_header(contest_index: int, label: str) -> List[HashInput]:
    return [int_to_bytes(contest_index), label]


def compute_chaining_field(mode: ChainingMode, device_hash: bytes, previous_confirmation_code: Optional[bytes]) -> bytes:
    """int32(mode) || device hash, or || previous code when simple chaining continues"""
    if mode == ChainingMode.SIMPLE and previous_confirmation_code is not None:
        return int_to_bytes(int(mode)) + previous_confirmation_code
    return int_to_bytes(int(mode)) + device_hash


def compute_contest_hash(
    selection_identifier_hash: bytes,
    contest_index: int,
    selections: Sequence[EncryptedSelection],
    metadata: Sequence[EncryptedValueWithProofs],
    contest_data: Optional[EncryptedData],
) -> bytes:
    parts: List[HashInput] = [TAG_CONTEST_HASH, int_to_bytes(contest_index)]
    for selection in selections:
        parts.extend((selection.ciphertext.alpha, selection.ciphertext.beta))
    for value in metadata:
        parts.extend((value.ciphertext.alpha, value.ciphertext.beta))
    if contest_data is not None:
        # the proof challenge and response are hashed as well
        parts.extend((contest_data.c0, contest_data.c1, contest_data.challenge, contest_data.response))
    return DomainHash.hash(selection_identifier_hash, *parts)


def compute_confirmation_code(selection_identifier_hash: bytes, contest_hashes: Sequence[bytes], chaining_field: bytes) -> bytes:
    return DomainHash.hash(
        selection_identifier_hash, TAG_CONFIRMATION_CODE, *contest_hashes, chaining_field)


def contest_data_padded_length(max_length: int) -> int:
    blocks = max(1, -(-max_length // CONTEST_DATA_BLOCK_BYTES))
    return blocks * CONTEST_DATA_BLOCK_BYTES


def compute_contest_data_key(selection_identifier_hash: bytes, contest_index: int, alpha: ElementModP, beta: ElementModP) -> bytes:
    return DomainHash.hash(
        selection_identifier_hash, TAG_CONTEST_DATA_KEY, int_to_bytes(contest_index), alpha, beta)


def apply_contest_data_keystream(key: bytes, contest_index: int, data: bytes) -> bytes:
    """XOR data with the per-block keystream; encryption and decryption are the same"""
    if len(data) % CONTEST_DATA_BLOCK_BYTES:
        raise BallotEncryptionError("Contest data must be whole 32-byte blocks")

    output = bytearray()
    for block_index in range(1, len(data) // CONTEST_DATA_BLOCK_BYTES + 1):
        keystream = DomainHash.hash(
            key,
            int_to_bytes(block_index),
            "data_enc_keys",
            b'\x00',
            CONTEST_DATA_LABEL,
            int_to_bytes(contest_index),
            int_to_bytes(block_index * 256),
        )
        start = (block_index - 1) * CONTEST_DATA_BLOCK_BYTES
        output += xor_bytes(data[start:start + CONTEST_DATA_BLOCK_BYTES], keystream)
    return bytes(output)


def compute_contest_data_challenge(
    params: ElectionParameters,
    selection_identifier_hash: bytes,
    contest_index: int,
    commitment: ElementModP,
    c0: ElementModP,
    c1: bytes,
) -> ElementModQ:
    return params.hash_to_q(
        selection_identifier_hash,
        TAG_CONTEST_DATA_PROOF,
        int_to_bytes(contest_index),
        commitment,
        c0,
        c1,
    )


def compute_ballot_nonce_keystream(key: bytes) -> bytes:
    return DomainHash.hash(
        key, b'\x01', "ballot_nonce", b'\x00', "ballot_nonce_encrypt", b'\x01\x00')


def compute_ballot_nonce_challenge(
    params: ElectionParameters,
    selection_identifier_hash: bytes,
    commitment: ElementModP,
    c0: ElementModP,
    c1: bytes,
) -> ElementModQ:
    return params.hash_to_q(
        selection_identifier_hash, TAG_BALLOT_NONCE_PROOF, commitment, c0, c1)


def decrypt_ballot_nonce(
    params: ElectionParameters,
    selection_identifier_hash: bytes,
    encrypted: EncryptedBallotNonce,
    data_secret_key: ElementModQ,
) -> bytes:
    """Recover the ballot nonce with the joint auxiliary-data secret"""
    beta = encrypted.c0 ** data_secret_key
    key = DomainHash.hash(selection_identifier_hash, TAG_BALLOT_NONCE_KEY, encrypted.c0, beta)
    return xor_bytes(encrypted.c1, compute_ballot_nonce_keystream(key))


def decrypt_contest_data(
    params: ElectionParameters,
    data_key: ElementModP,
    selection_identifier_hash: bytes,
    contest_index: int,
    encrypted: EncryptedData,
    nonce: ElementModQ,
) -> str:
    beta = data_key ** nonce
    key = compute_contest_data_key(selection_identifier_hash, contest_index, encrypted.c0, beta)
    plaintext = apply_contest_data_keystream(key, contest_index, encrypted.c1)
    return plaintext.rstrip(b'\x00').decode('utf-8')


# ============================================================================
# ENCRYPTOR
# ============================================================================


class BallotEncryptor:
    """Encrypts plaintext ballots for one voting device.

    Holds no mutable state beyond its configuration, so one instance may
    encrypt distinct ballots from several threads. The caller supplies the
    previous confirmation code to continue a device's chain.
    """

    def __init__(self, record: EncryptionRecord, device_id: str):
        self.record = record
        self.params = record.parameters
        self.manifest = record.manifest
        self.device_id = device_id
        self.device_hash = compute_device_hash(record.extended_base_hash, device_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, ballot: Ballot) -> BallotValidationResult:
        result = BallotValidationResult(ballot_id=ballot.id)

        if not _is_count(ballot.weight):
            result.errors.append(ValidationError(None, None, f"weight {ballot.weight!r} is not an integer"))
        elif ballot.weight < 1:
            result.errors.append(ValidationError(None, None, f"weight {ballot.weight} must be at least 1"))

        try:
            style = self.manifest.ballot_style(ballot.ballot_style_id)
        except KeyError:
            result.errors.append(ValidationError(
                None, None, f"unknown ballot style {ballot.ballot_style_id}"))
            return result

        counts = Counter(contest.id for contest in ballot.contests)
        for contest_id in style.contest_ids:
            if counts[contest_id] == 0:
                result.errors.append(ValidationError(contest_id, None, "contest missing from ballot"))
            elif counts[contest_id] > 1:
                result.errors.append(ValidationError(contest_id, None, "contest appears more than once"))
        for contest_id in counts:
            if contest_id not in style.contest_ids:
                result.errors.append(ValidationError(contest_id, None, "contest not in ballot style"))

        for ballot_contest in ballot.contests:
            if ballot_contest.id in style.contest_ids and counts[ballot_contest.id] == 1:
                result.errors.extend(
                    self._validate_contest(self.manifest.contest(ballot_contest.id), ballot_contest))

        return result

    def _validate_contest(self, contest: Contest, ballot_contest: BallotContest) -> List[ValidationError]:
        errors = []

        counts = Counter(choice.id for choice in ballot_contest.choices)
        for choice in contest.choices:
            if counts[choice.id] == 0:
                errors.append(ValidationError(contest.id, choice.id, "choice missing from contest"))
            elif counts[choice.id] > 1:
                errors.append(ValidationError(contest.id, choice.id, "choice appears more than once"))
        known = {choice.id for choice in contest.choices}
        for choice_id in counts:
            if choice_id not in known:
                errors.append(ValidationError(contest.id, choice_id, "choice not in contest"))

        for ballot_choice in ballot_contest.choices:
            if not _is_count(ballot_choice.value):
                errors.append(ValidationError(
                    contest.id, ballot_choice.id, f"value {ballot_choice.value!r} is not an integer"))
            elif not 0 <= ballot_choice.value <= contest.option_selection_limit:
                errors.append(ValidationError(
                    contest.id, ballot_choice.id,
                    f"value {ballot_choice.value} outside [0, {contest.option_selection_limit}]"))

        if not _is_count(ballot_contest.num_writeins_selected):
            errors.append(ValidationError(
                contest.id, None, f"write-in count {ballot_contest.num_writeins_selected!r} is not an integer"))
        elif not 0 <= ballot_contest.num_writeins_selected <= contest.selection_limit:
            errors.append(ValidationError(
                contest.id, None,
                f"write-in count {ballot_contest.num_writeins_selected} outside [0, {contest.selection_limit}]"))

        if ballot_contest.contest_data is not None:
            max_length = self.manifest.optional_contest_data_max_length
            length = len(ballot_contest.contest_data.encode('utf-8'))
            if max_length == 0:
                errors.append(ValidationError(contest.id, None, "contest data not accepted"))
            elif length > max_length:
                errors.append(ValidationError(
                    contest.id, None, f"contest data is {length} bytes, limit {max_length}"))

        return errors

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, ballot: Ballot, previous_confirmation_code: Optional[bytes] = None) -> EncryptedBallot:
        result = self.validate(ballot)
        if not result.is_valid:
            logger.warning(
                f"Ballot {ballot.id} rejected with {len(result.errors)} errors: {result.errors[0]}")
            raise result.errors[0]
        if previous_confirmation_code is not None and len(previous_confirmation_code) != HASH_BYTES:
            raise BallotEncryptionError("Previous confirmation code must be 32 bytes")

        selection_identifier = secrets.token_bytes(SELECTION_IDENTIFIER_BYTES)
        selection_identifier_hash = compute_selection_identifier_hash(
            self.record.extended_base_hash, selection_identifier)
        ballot_nonce = secrets.token_bytes(BALLOT_NONCE_BYTES)

        ballot_contests = {contest.id: contest for contest in ballot.contests}
        style = self.manifest.ballot_style(ballot.ballot_style_id)
        contests = tuple(
            self._encrypt_contest(
                selection_identifier_hash,
                ballot_nonce,
                self.manifest.contest(contest_id),
                ballot_contests[contest_id],
            )
            for contest_id in style.contest_ids
        )

        chaining_field = compute_chaining_field(
            self.manifest.chaining_mode, self.device_hash, previous_confirmation_code)
        confirmation_code = compute_confirmation_code(
            selection_identifier_hash, [contest.contest_hash for contest in contests], chaining_field)

        logger.info(
            f"Encrypted ballot {ballot.id} on device {self.device_id}: "
            f"confirmation code {confirmation_code.hex()[:16]}...")

        return EncryptedBallot(
            id=ballot.id,
            ballot_style_id=ballot.ballot_style_id,
            device_id=self.device_id,
            selection_identifier=selection_identifier,
            selection_identifier_hash=selection_identifier_hash,
            contests=contests,
            encrypted_ballot_nonce=self._encrypt_ballot_nonce(selection_identifier_hash, ballot_nonce),
            chaining_field=chaining_field,
            confirmation_code=confirmation_code,
            weight=ballot.weight,
        )

    def _encrypt_contest(
        self,
        selection_identifier_hash: bytes,
        ballot_nonce: bytes,
        contest: Contest,
        ballot_contest: BallotContest,
    ) -> EncryptedContest:
        vote_key = self.record.election_public_keys.vote_key
        values: Dict[str, int] = {choice.id: choice.value for choice in ballot_contest.choices}
        total = sum(values.values())

        overvoted = total > contest.selection_limit
        if overvoted:
            logger.info(
                f"Contest {contest.id} overvoted ({total} > {contest.selection_limit}); "
                f"selections encrypted as zero")
            values = {choice_id: 0 for choice_id in values}
            total = 0

        selections = []
        aggregate_nonce = self.params.zero_q()
        for choice in contest.choices:
            nonce = compute_selection_nonce(
                self.params, selection_identifier_hash, contest.index, choice.index, ballot_nonce)
            ciphertext = elgamal_encrypt(self.params, vote_key, values[choice.id], nonce)
            proof = make_range_proof(
                self.params,
                selection_identifier_hash,
                selection_proof_header(contest.index, choice.index),
                ciphertext,
                nonce,
                values[choice.id],
                contest.option_selection_limit,
                vote_key,
            )
            selections.append(EncryptedSelection(choice_id=choice.id, ciphertext=ciphertext, proof=proof))
            aggregate_nonce = aggregate_nonce + nonce

        aggregate = reduce(mul, (selection.ciphertext for selection in selections))
        contest_proof = make_range_proof(
            self.params,
            selection_identifier_hash,
            contest_proof_header(contest.index),
            aggregate,
            aggregate_nonce,
            total,
            contest.selection_limit,
            vote_key,
        )

        writeins = ballot_contest.num_writeins_selected
        counters = {
            OVERVOTE_LABEL: (self.manifest.include_overvotes, int(overvoted), 1),
            NULLVOTE_LABEL: (self.manifest.include_nullvotes,
                             int(not overvoted and total == 0 and writeins == 0), 1),
            UNDERVOTE_LABEL: (self.manifest.include_undervotes,
                              0 if overvoted else contest.selection_limit - total, contest.selection_limit),
            WRITEIN_LABEL: (self.manifest.include_writeins, writeins, contest.selection_limit),
        }
        metadata: Dict[str, Optional[EncryptedValueWithProofs]] = {}
        for label, (included, value, limit) in counters.items():
            metadata[label] = self._encrypt_counter(
                selection_identifier_hash, ballot_nonce, contest.index, label, value, limit) if included else None

        contest_data = None
        if ballot_contest.contest_data is not None:
            contest_data = self._encrypt_contest_data(
                selection_identifier_hash, ballot_nonce, contest.index, ballot_contest.contest_data)

        present_metadata = [value for value in metadata.values() if value is not None]
        contest_hash = compute_contest_hash(
            selection_identifier_hash, contest.index, selections, present_metadata, contest_data)

        return EncryptedContest(
            id=contest.id,
            index=contest.index,
            selections=tuple(selections),
            proof=contest_proof,
            overvote=metadata[OVERVOTE_LABEL],
            nullvote=metadata[NULLVOTE_LABEL],
            undervote=metadata[UNDERVOTE_LABEL],
            writein=metadata[WRITEIN_LABEL],
            contest_data=contest_data,
            contest_hash=contest_hash,
        )

    def _encrypt_counter(
        self,
        selection_identifier_hash: bytes,
        ballot_nonce: bytes,
        contest_index: int,
        label: str,
        value: int,
        limit: int,
    ) -> EncryptedValueWithProofs:
        vote_key = self.record.election_public_keys.vote_key
        nonce = compute_contest_nonce(
            self.params, selection_identifier_hash, contest_index, label, ballot_nonce)
        ciphertext = elgamal_encrypt(self.params, vote_key, value, nonce)
        proof = make_range_proof(
            self.params,
            selection_identifier_hash,
            metadata_proof_header(contest_index, label),
            ciphertext,
            nonce,
            value,
            limit,
            vote_key,
        )
        return EncryptedValueWithProofs(ciphertext=ciphertext, proof=proof)

    def _encrypt_contest_data(
        self,
        selection_identifier_hash: bytes,
        ballot_nonce: bytes,
        contest_index: int,
        text: str,
    ) -> EncryptedData:
        data_key = self.record.election_public_keys.data_key
        nonce = compute_contest_nonce(
            self.params, selection_identifier_hash, contest_index, CONTEST_DATA_LABEL, ballot_nonce)
        alpha = self.params.g_pow(nonce)
        beta = data_key ** nonce

        padded_length = contest_data_padded_length(self.manifest.optional_contest_data_max_length)
        plaintext = text.encode('utf-8').ljust(padded_length, b'\x00')
        key = compute_contest_data_key(selection_identifier_hash, contest_index, alpha, beta)
        c1 = apply_contest_data_keystream(key, contest_index, plaintext)

        proof_nonce = self.params.random_keypair()
        challenge = compute_contest_data_challenge(
            self.params, selection_identifier_hash, contest_index, proof_nonce.public_key, alpha, c1)
        return EncryptedData(
            c0=alpha,
            c1=c1,
            challenge=challenge,
            response=proof_nonce.secret_key - challenge * nonce,
        )

    def _encrypt_ballot_nonce(self, selection_identifier_hash: bytes, ballot_nonce: bytes) -> EncryptedBallotNonce:
        ephemeral = self.params.random_keypair()
        alpha = ephemeral.public_key
        beta = self.record.election_public_keys.data_key ** ephemeral.secret_key

        key = DomainHash.hash(selection_identifier_hash, TAG_BALLOT_NONCE_KEY, alpha, beta)
        c1 = xor_bytes(ballot_nonce, compute_ballot_nonce_keystream(key))

        proof_nonce = self.params.random_keypair()
        challenge = compute_ballot_nonce_challenge(
            self.params, selection_identifier_hash, proof_nonce.public_key, alpha, c1)
        return EncryptedBallotNonce(
            c0=alpha,
            c1=c1,
            challenge=challenge,
            response=proof_nonce.secret_key - challenge * ephemeral.secret_key,
        )
