"""
Election Record Verification
============================
Independent checks that re-derive a value from public data and compare it
to the value claimed in the record. Every check is stateless and never
mutates its inputs; a mismatch raises VerificationFailed tagged with the
subsection that failed (for example "6.D").

    1  parameters              6  selection encryptions
    2  guardian public keys    7  contest vote limits
    3  election public keys    8  confirmation codes and chaining
    4  extended base hash      9  ballot aggregation
    5  selection identifiers
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from cryptography.hazmat.primitives import constant_time

from ballot.ballot_encryption import (
    CONTEST_DATA_LABEL,
    NULLVOTE_LABEL,
    OVERVOTE_LABEL,
    UNDERVOTE_LABEL,
    WRITEIN_LABEL,
    EncryptedBallot,
    EncryptedContest,
    EncryptionRecord,
    compute_ballot_nonce_challenge,
    compute_chaining_field,
    compute_confirmation_code,
    compute_contest_data_challenge,
    compute_contest_hash,
    compute_device_hash,
    compute_selection_identifier_hash,
    contest_proof_header,
    metadata_proof_header,
    selection_proof_header,
)
from ballot.election_models import Contest
from ballot.range_proofs import (
    ElGamalCiphertext,
    RangeProof,
    range_proof_challenge,
    recompute_range_commitments,
    schnorr_commitment,
    sum_challenges,
)
from group.group_arithmetic import (
    CryptographicParameters,
    ElectionGuardError,
    ElectionParameters,
    ElementModP,
    ElementModQ,
    GuardianParameters,
    HashInput,
    compute_election_base_hash,
    compute_extended_base_hash,
    compute_parameter_base_hash,
)
from keyceremony.key_ceremony import (
    DATA_KEY_LABEL,
    VOTE_KEY_LABEL,
    ElectionPublicKeys,
    GuardianPublicView,
    SchnorrProof,
    compute_key_proof_challenge,
)

logger = logging.getLogger(__name__)

# ============================================================================
# FAILURES
# ============================================================================


class VerificationCheck(Enum):
    PARAMETERS = "1"
    GUARDIAN_PUBLIC_KEYS = "2"
    ELECTION_PUBLIC_KEYS = "3"
    EXTENDED_BASE_HASH = "4"
    SELECTION_IDENTIFIERS = "5"
    SELECTION_ENCRYPTIONS = "6"
    CONTEST_VOTE_LIMITS = "7"
    CONFIRMATION_CODES = "8"
    BALLOT_AGGREGATION = "9"


class VerificationFailed(ElectionGuardError):
    """A re-derived value differs from the one in the record"""

    def __init__(
        self,
        subsection: str,
        message: str,
        guardian_index: Optional[int] = None,
        ballot_id: Optional[str] = None,
    ):
        self.subsection = subsection
        self.message = message
        self.guardian_index = guardian_index
        self.ballot_id = ballot_id
        super().__init__(f"[{subsection}] {message}")

    @property
    def check(self) -> VerificationCheck:
        return VerificationCheck(self.subsection.split('.')[0])


def _fail(subsection: str, message: str, guardian_index: Optional[int] = None, ballot_id: Optional[str] = None):
    logger.error(f"Verification {subsection} failed: {message}")
    raise VerificationFailed(subsection, message, guardian_index=guardian_index, ballot_id=ballot_id)


def _in_zq(element: ElementModQ, q: int) -> bool:
    return element.modulus == q and 0 <= element.value < q


def _is_residue(element: ElementModP, params: ElectionParameters) -> bool:
    return element.modulus == params.p and element.is_valid_residue(params.q)


def _range_proof_checks(
    params: ElectionParameters,
    code: str,
    ballot_id: str,
    what: str,
    key: bytes,
    header: Sequence[HashInput],
    ciphertext: ElGamalCiphertext,
    proof: RangeProof,
    public_key: ElementModP,
    limit: int,
):
    """Subsections A to D of a range-proof check, shared by checks 6 and 7"""
    if not (_is_residue(ciphertext.alpha, params) and _is_residue(ciphertext.beta, params)):
        _fail(f"{code}.A", f"{what}: ciphertext is not in the order-q subgroup", ballot_id=ballot_id)

    if len(proof.pairs) != limit + 1:
        _fail(f"{code}.B", f"{what}: expected {limit + 1} challenges, found {len(proof.pairs)}",
              ballot_id=ballot_id)
    if not all(_in_zq(pair.challenge, params.q) for pair in proof.pairs):
        _fail(f"{code}.B", f"{what}: challenge outside Z_q", ballot_id=ballot_id)

    if not all(_in_zq(pair.response, params.q) for pair in proof.pairs):
        _fail(f"{code}.C", f"{what}: response outside Z_q", ballot_id=ballot_id)

    commitments = recompute_range_commitments(params, public_key, ciphertext, proof)
    challenge = range_proof_challenge(params, key, header, ciphertext, commitments)
    if sum_challenges(params, proof) != challenge:
        _fail(f"{code}.D", f"{what}: challenges do not sum to the proof challenge", ballot_id=ballot_id)


# ============================================================================
# 1 TO 4: ELECTION RECORD
# ============================================================================


class ParameterVerification:
    """1.A to 1.F: the record uses the expected group and hash chain"""

    def __init__(self, expected: ElectionParameters):
        self.expected = expected

    def verify(self, cryptographic: CryptographicParameters, guardians: GuardianParameters, parameter_base_hash: bytes):
        expected = self.expected.cryptographic
        if cryptographic.version != expected.version:
            _fail("1.A", f"Version {cryptographic.version!r} != {expected.version!r}")
        if cryptographic.p != expected.p:
            _fail("1.B", "Modulus p differs from the expected parameters")
        if cryptographic.q != expected.q:
            _fail("1.C", "Subgroup order q differs from the expected parameters")
        if cryptographic.g != expected.g:
            _fail("1.D", "Generator g differs from the expected parameters")

        recomputed = compute_parameter_base_hash(cryptographic, guardians)
        if guardians != self.expected.guardians or recomputed != self.expected.parameter_base_hash:
            _fail("1.E", f"Guardian counts n={guardians.n}, k={guardians.k} do not match the expected parameters")
        if not constant_time.bytes_eq(recomputed, parameter_base_hash):
            _fail("1.E", "Parameter base hash does not match its recomputation")

    def verify_election_base_hash(self, manifest_bytes: bytes, election_base_hash: bytes):
        recomputed = compute_election_base_hash(self.expected.parameter_base_hash, manifest_bytes)
        if not constant_time.bytes_eq(recomputed, election_base_hash):
            _fail("1.F", "Election base hash does not match the manifest")


class GuardianPublicKeyVerification:
    """2.A to 2.C: commitments are group elements and the key proofs hold"""

    def __init__(self, params: ElectionParameters):
        self.params = params

    def verify(self, views: Sequence[GuardianPublicView]):
        indices = sorted(view.index for view in views)
        if indices != list(range(1, self.params.n + 1)):
            _fail("2.A", f"Expected guardians 1..{self.params.n}, found {indices}")

        for view in views:
            self._verify_key(view, view.vote_commitments, view.vote_proof, VOTE_KEY_LABEL)
            self._verify_key(view, view.data_commitments, view.data_proof, DATA_KEY_LABEL)

    def _verify_key(self, view: GuardianPublicView, commitments: Sequence[ElementModP], proof: SchnorrProof, label: str):
        params = self.params
        if len(commitments) != params.k:
            _fail("2.A", f"Guardian {view.index} published {len(commitments)} {label} commitments, expected {params.k}",
                  guardian_index=view.index)
        for element in (*commitments, view.communication_key):
            if not _is_residue(element, params):
                _fail("2.A", f"Guardian {view.index} {label} commitment is not in the order-q subgroup",
                      guardian_index=view.index)

        if len(proof.responses) != params.k + 1:
            _fail("2.B", f"Guardian {view.index} {label} proof has {len(proof.responses)} responses",
                  guardian_index=view.index)
        if not all(_in_zq(response, params.q) for response in proof.responses) or not _in_zq(proof.challenge, params.q):
            _fail("2.B", f"Guardian {view.index} {label} proof value outside Z_q", guardian_index=view.index)

        proven = list(commitments) + [view.communication_key]
        h_values = [
            schnorr_commitment(params, public, proof.challenge, response)
            for public, response in zip(proven, proof.responses)
        ]
        challenge = compute_key_proof_challenge(
            params, label, view.index, commitments, view.communication_key, h_values)
        if challenge != proof.challenge:
            _fail("2.C", f"Guardian {view.index} {label} proof challenge does not match",
                  guardian_index=view.index)


class ElectionPublicKeyVerification:
    """3.A, 3.B: joint keys are the product of the constant-term commitments"""

    def __init__(self, params: ElectionParameters):
        self.params = params

    def verify(self, views: Sequence[GuardianPublicView], keys: ElectionPublicKeys):
        vote_key = self.params.one_p()
        data_key = self.params.one_p()
        for view in views:
            vote_key = vote_key * view.vote_commitments[0]
            data_key = data_key * view.data_commitments[0]

        if vote_key != keys.vote_key:
            _fail("3.A", "Vote encryption key is not the product of guardian commitments")
        if data_key != keys.data_key:
            _fail("3.B", "Auxiliary data key is not the product of guardian commitments")


class ExtendedBaseHashVerification:
    """4.A"""

    def verify(self, record: EncryptionRecord):
        keys = record.election_public_keys
        recomputed = compute_extended_base_hash(record.election_base_hash, keys.vote_key, keys.data_key)
        if not constant_time.bytes_eq(recomputed, record.extended_base_hash):
            _fail("4.A", "Extended base hash does not match its recomputation")


# ============================================================================
# 5 TO 8: BALLOTS
# ============================================================================


class SelectionEncryptionIdentifierVerification:
    """5.A identifiers unique across the ballot set, 5.B H_I recomputation"""

    def __init__(self, record: EncryptionRecord):
        self.record = record

    def verify_unique(self, ballots: Sequence[EncryptedBallot]):
        seen: Dict[bytes, str] = {}
        for ballot in ballots:
            if ballot.selection_identifier in seen:
                _fail("5.A", f"Ballots {seen[ballot.selection_identifier]} and {ballot.id} share a selection identifier",
                      ballot_id=ballot.id)
            seen[ballot.selection_identifier] = ballot.id

    def verify(self, ballot: EncryptedBallot):
        recomputed = compute_selection_identifier_hash(self.record.extended_base_hash, ballot.selection_identifier)
        if not constant_time.bytes_eq(recomputed, ballot.selection_identifier_hash):
            _fail("5.B", f"Ballot {ballot.id} selection identifier hash does not match", ballot_id=ballot.id)


class SelectionEncryptionsWellFormedVerification:
    """6.A to 6.E on every selection, metadata field, and auxiliary-data proof"""

    def __init__(self, record: EncryptionRecord):
        self.record = record
        self.params = record.parameters

    def verify(self, ballot: EncryptedBallot):
        manifest = self.record.manifest
        vote_key = self.record.election_public_keys.vote_key
        h_i = ballot.selection_identifier_hash

        for contest in ballot.contests:
            manifest_contest = _manifest_contest(self.record, ballot, contest)
            if [selection.choice_id for selection in contest.selections] != [c.id for c in manifest_contest.choices]:
                _fail("6.B", f"Contest {contest.id} selections do not match the manifest choices", ballot_id=ballot.id)

            for selection, choice in zip(contest.selections, manifest_contest.choices):
                _range_proof_checks(
                    self.params, "6", ballot.id, f"Selection {contest.id}/{choice.id}",
                    h_i, selection_proof_header(contest.index, choice.index),
                    selection.ciphertext, selection.proof, vote_key, manifest_contest.option_selection_limit)

            expected_labels = [
                label for label, included in (
                    (OVERVOTE_LABEL, manifest.include_overvotes),
                    (NULLVOTE_LABEL, manifest.include_nullvotes),
                    (UNDERVOTE_LABEL, manifest.include_undervotes),
                    (WRITEIN_LABEL, manifest.include_writeins),
                ) if included
            ]
            present = contest.metadata()
            if [label for label, _ in present] != expected_labels:
                _fail("6.B", f"Contest {contest.id} metadata fields do not match the manifest", ballot_id=ballot.id)

            for label, value in present:
                limit = 1 if label in (OVERVOTE_LABEL, NULLVOTE_LABEL) else manifest_contest.selection_limit
                _range_proof_checks(
                    self.params, "6", ballot.id, f"Contest {contest.id} {label}",
                    h_i, metadata_proof_header(contest.index, label),
                    value.ciphertext, value.proof, vote_key, limit)

            if contest.contest_data is not None:
                self._verify_contest_data(ballot, contest)

        self._verify_ballot_nonce(ballot)

    def _verify_contest_data(self, ballot: EncryptedBallot, contest: EncryptedContest):
        data = contest.contest_data
        if not _is_residue(data.c0, self.params):
            _fail("6.E", f"Contest {contest.id} {CONTEST_DATA_LABEL} c0 is not in the order-q subgroup",
                  ballot_id=ballot.id)
        commitment = schnorr_commitment(self.params, data.c0, data.challenge, data.response)
        challenge = compute_contest_data_challenge(
            self.params, ballot.selection_identifier_hash, contest.index, commitment, data.c0, data.c1)
        if challenge != data.challenge:
            _fail("6.E", f"Contest {contest.id} {CONTEST_DATA_LABEL} proof does not verify", ballot_id=ballot.id)

    def _verify_ballot_nonce(self, ballot: EncryptedBallot):
        encrypted = ballot.encrypted_ballot_nonce
        if not _is_residue(encrypted.c0, self.params):
            _fail("6.E", "Encrypted ballot nonce c0 is not in the order-q subgroup", ballot_id=ballot.id)
        commitment = schnorr_commitment(self.params, encrypted.c0, encrypted.challenge, encrypted.response)
        challenge = compute_ballot_nonce_challenge(
            self.params, ballot.selection_identifier_hash, commitment, encrypted.c0, encrypted.c1)
        if challenge != encrypted.challenge:
            _fail("6.E", "Encrypted ballot nonce proof does not verify", ballot_id=ballot.id)


class AdherenceToVoteLimitsVerification:
    """7.A to 7.D on each contest's aggregate ciphertext"""

    def __init__(self, record: EncryptionRecord):
        self.record = record

    def verify(self, ballot: EncryptedBallot):
        vote_key = self.record.election_public_keys.vote_key
        for contest in ballot.contests:
            manifest_contest = _manifest_contest(self.record, ballot, contest)
            _range_proof_checks(
                self.record.parameters, "7", ballot.id, f"Contest {contest.id}",
                ballot.selection_identifier_hash, contest_proof_header(contest.index),
                contest.aggregate(), contest.proof, vote_key, manifest_contest.selection_limit)


class ConfirmationCodeVerification:
    """8.A contest hashes, 8.B confirmation code, 8.C device chaining"""

    def __init__(self, record: EncryptionRecord):
        self.record = record

    def verify(self, ballot: EncryptedBallot):
        h_i = ballot.selection_identifier_hash
        for contest in ballot.contests:
            recomputed = compute_contest_hash(
                h_i, contest.index, contest.selections,
                [value for _, value in contest.metadata()], contest.contest_data)
            if not constant_time.bytes_eq(recomputed, contest.contest_hash):
                _fail("8.A", f"Contest {contest.id} hash does not match", ballot_id=ballot.id)

        code = compute_confirmation_code(
            h_i, [contest.contest_hash for contest in ballot.contests], ballot.chaining_field)
        if not constant_time.bytes_eq(code, ballot.confirmation_code):
            _fail("8.B", f"Ballot {ballot.id} confirmation code does not match", ballot_id=ballot.id)

    def verify_chain(self, ballots: Sequence[EncryptedBallot]):
        """Ballots from one device, in the order they were cast"""
        mode = self.record.manifest.chaining_mode
        previous: Optional[bytes] = None
        for ballot in ballots:
            device_hash = compute_device_hash(self.record.extended_base_hash, ballot.device_id)
            expected = compute_chaining_field(mode, device_hash, previous)
            if not constant_time.bytes_eq(expected, ballot.chaining_field):
                _fail("8.C", f"Ballot {ballot.id} chaining field does not follow device {ballot.device_id}",
                      ballot_id=ballot.id)
            previous = ballot.confirmation_code


def _manifest_contest(record: EncryptionRecord, ballot: EncryptedBallot, contest: EncryptedContest) -> Contest:
    try:
        manifest_contest = record.manifest.contest(contest.id)
    except KeyError:
        manifest_contest = None
    if manifest_contest is None:
        _fail("6.B", f"Contest {contest.id} is not in the manifest", ballot_id=ballot.id)
    if manifest_contest.index != contest.index:
        _fail("6.B", f"Contest {contest.id} index {contest.index} != manifest index {manifest_contest.index}",
              ballot_id=ballot.id)
    return manifest_contest


# ============================================================================
# 9: AGGREGATION
# ============================================================================


class BallotAggregationVerification:
    """9.A, 9.B: the claimed tally is the weighted product of the ballots"""

    def __init__(self, record: EncryptionRecord):
        self.record = record

    def verify(self, ballots: Sequence[EncryptedBallot], claimed: Dict[str, Dict[str, ElGamalCiphertext]]):
        identity = ElGamalCiphertext.identity(self.record.parameters)
        expected = {
            contest.id: {choice.id: identity for choice in contest.choices}
            for contest in self.record.manifest.contests
        }
        for ballot in ballots:
            for contest in ballot.contests:
                if contest.id not in expected:
                    _fail("9.A", f"Ballot {ballot.id} contest {contest.id} is not in the manifest", ballot_id=ballot.id)
                for selection in contest.selections:
                    if selection.choice_id not in expected[contest.id]:
                        _fail("9.A", f"Ballot {ballot.id} choice {contest.id}/{selection.choice_id} is not in the manifest",
                              ballot_id=ballot.id)
                    current = expected[contest.id][selection.choice_id]
                    expected[contest.id][selection.choice_id] = current * (selection.ciphertext ** ballot.weight)

        for contest_id, choices in expected.items():
            for choice_id, ciphertext in choices.items():
                actual = claimed.get(contest_id, {}).get(choice_id)
                if actual is None:
                    _fail("9.A", f"Tally is missing {contest_id}/{choice_id}")
                if actual.alpha != ciphertext.alpha:
                    _fail("9.A", f"Aggregate alpha for {contest_id}/{choice_id} does not match the ballots")
                if actual.beta != ciphertext.beta:
                    _fail("9.B", f"Aggregate beta for {contest_id}/{choice_id} does not match the ballots")


# ============================================================================
# SUITE
# ============================================================================


@dataclass
class VerificationReport:
    checks_passed: List[VerificationCheck] = field(default_factory=list)
    ballots_verified: int = 0
    devices_verified: int = 0

    def passed(self, check: VerificationCheck) -> bool:
        return check in self.checks_passed


class VerificationSuite:
    """Runs all nine checks over an encryption record, its ballots, and a tally.

    Per-ballot checks are independent and run on a thread pool.
    """

    def __init__(self, record: EncryptionRecord, expected_parameters: Optional[ElectionParameters] = None,
                 max_workers: Optional[int] = None):
        self.record = record
        self.expected = expected_parameters or ElectionParameters(
            cryptographic=CryptographicParameters.default(),
            guardians=record.parameters.guardians,
        )
        self.max_workers = max_workers

        self._identifiers = SelectionEncryptionIdentifierVerification(record)
        self._selections = SelectionEncryptionsWellFormedVerification(record)
        self._limits = AdherenceToVoteLimitsVerification(record)
        self._confirmation = ConfirmationCodeVerification(record)

    def verify_election_record(self, report: Optional[VerificationReport] = None) -> VerificationReport:
        report = report or VerificationReport()
        params = self.record.parameters

        parameters = ParameterVerification(self.expected)
        parameters.verify(params.cryptographic, params.guardians, params.parameter_base_hash)
        parameters.verify_election_base_hash(self.record.manifest.canonical_bytes(), self.record.election_base_hash)
        report.checks_passed.append(VerificationCheck.PARAMETERS)

        GuardianPublicKeyVerification(params).verify(self.record.guardians)
        report.checks_passed.append(VerificationCheck.GUARDIAN_PUBLIC_KEYS)

        ElectionPublicKeyVerification(params).verify(self.record.guardians, self.record.election_public_keys)
        report.checks_passed.append(VerificationCheck.ELECTION_PUBLIC_KEYS)

        ExtendedBaseHashVerification().verify(self.record)
        report.checks_passed.append(VerificationCheck.EXTENDED_BASE_HASH)

        logger.info("Election record verified (checks 1-4)")
        return report

    def verify_ballot(self, ballot: EncryptedBallot):
        self._identifiers.verify(ballot)
        self._selections.verify(ballot)
        self._limits.verify(ballot)
        self._confirmation.verify(ballot)
        logger.debug(f"Ballot {ballot.id} verified")

    def verify_ballots(self, ballots: Sequence[EncryptedBallot],
                       report: Optional[VerificationReport] = None) -> VerificationReport:
        """Ballots in cast order; chains are checked per device in that order"""
        report = report or VerificationReport()
        self._identifiers.verify_unique(ballots)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            list(executor.map(self.verify_ballot, ballots))

        devices: Dict[str, List[EncryptedBallot]] = {}
        for ballot in ballots:
            devices.setdefault(ballot.device_id, []).append(ballot)
        for device_ballots in devices.values():
            self._confirmation.verify_chain(device_ballots)

        report.checks_passed.extend([
            VerificationCheck.SELECTION_IDENTIFIERS,
            VerificationCheck.SELECTION_ENCRYPTIONS,
            VerificationCheck.CONTEST_VOTE_LIMITS,
            VerificationCheck.CONFIRMATION_CODES,
        ])
        report.ballots_verified += len(ballots)
        report.devices_verified += len(devices)

        logger.info(f"Verified {len(ballots)} ballots from {len(devices)} devices (checks 5-8)")
        return report

    def verify_tally(self, ballots: Sequence[EncryptedBallot], claimed: Dict[str, Dict[str, ElGamalCiphertext]],
                     report: Optional[VerificationReport] = None) -> VerificationReport:
        report = report or VerificationReport()
        BallotAggregationVerification(self.record).verify(ballots, claimed)
        report.checks_passed.append(VerificationCheck.BALLOT_AGGREGATION)
        logger.info("Tally aggregation verified (check 9)")
        return report

    def verify_all(self, ballots: Sequence[EncryptedBallot],
                   claimed: Optional[Dict[str, Dict[str, ElGamalCiphertext]]] = None) -> VerificationReport:
        report = self.verify_election_record()
        self.verify_ballots(ballots, report)
        if claimed is not None:
            self.verify_tally(ballots, claimed, report)
        return report
