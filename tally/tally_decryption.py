"""
Tally Aggregation and Threshold Decryption
==========================================
Homomorphic accumulation of encrypted ballots, per-guardian partial
decryptions, and Lagrange recombination by any k of the n guardians.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ballot.ballot_encryption import EncryptedBallot
from ballot.election_models import Manifest
from ballot.range_proofs import ElGamalCiphertext
from group.group_arithmetic import ElectionGuardError, ElectionParameters, ElementModP, ElementModQ
from keyceremony.key_ceremony import ElectionPublicKeys, GuardianSecretShares

logger = logging.getLogger(__name__)

CiphertextTable = Dict[str, Dict[str, ElGamalCiphertext]]

# ============================================================================
# EXCEPTIONS
# ============================================================================


class TallyError(ElectionGuardError):
    """Raised on malformed tally input"""
    pass


class TallyDecryptionFailed(TallyError):
    """Raised when a tally cannot be decrypted"""

    def __init__(self, message: str, contest_id: Optional[str] = None, choice_id: Optional[str] = None,
                 guardian_indices: Optional[List[int]] = None):
        self.contest_id = contest_id
        self.choice_id = choice_id
        self.guardian_indices = guardian_indices
        super().__init__(message)


# ============================================================================
# AGGREGATION
# ============================================================================


class EncryptedTally:
    """Running homomorphic tally, one ciphertext per (contest, choice).

    add_ballot and merge are serialized by an internal lock, so several
    encryption workers may feed the same tally.
    """

    def __init__(self, manifest: Manifest, params: ElectionParameters):
        self.manifest = manifest
        self.params = params
        self.ballots_cast = 0
        self.total_weight = 0
        self._lock = threading.Lock()
        self._contests: CiphertextTable = {
            contest.id: {
                choice.id: ElGamalCiphertext.identity(params)
                for choice in contest.choices
            }
            for contest in manifest.contests
        }

    @property
    def contests(self) -> CiphertextTable:
        """Snapshot of the accumulated ciphertexts"""
        with self._lock:
            return {contest_id: dict(choices) for contest_id, choices in self._contests.items()}

    def ciphertext(self, contest_id: str, choice_id: str) -> ElGamalCiphertext:
        with self._lock:
            return self._contests[contest_id][choice_id]

    def selection_bound(self, contest_id: str) -> int:
        """Largest count a single choice of this contest can reach"""
        return self.total_weight * self.manifest.contest(contest_id).option_selection_limit

    def add_ballot(self, ballot: EncryptedBallot):
        if ballot.weight < 1:
            raise TallyError(f"Ballot {ballot.id} has invalid weight {ballot.weight}")

        for contest in ballot.contests:
            if contest.id not in self._contests:
                raise TallyError(f"Ballot {ballot.id} contains unknown contest {contest.id}")
            for selection in contest.selections:
                if selection.choice_id not in self._contests[contest.id]:
                    raise TallyError(
                        f"Ballot {ballot.id} contains unknown choice {contest.id}/{selection.choice_id}")

        with self._lock:
            for contest in ballot.contests:
                accumulated = self._contests[contest.id]
                for selection in contest.selections:
                    weighted = selection.ciphertext if ballot.weight == 1 else selection.ciphertext ** ballot.weight
                    accumulated[selection.choice_id] = accumulated[selection.choice_id] * weighted
            self.ballots_cast += 1
            self.total_weight += ballot.weight

        logger.debug(f"Added ballot {ballot.id} (weight {ballot.weight}) to tally")

    def merge(self, other: 'EncryptedTally'):
        """Fold another shard of the same election into this tally"""
        if other is self:
            raise TallyError("Cannot merge a tally into itself")
        if other.manifest.canonical_bytes() != self.manifest.canonical_bytes():
            raise TallyError("Cannot merge tallies of different manifests")

        other_contests = other.contests
        with self._lock:
            for contest_id, choices in other_contests.items():
                for choice_id, ciphertext in choices.items():
                    self._contests[contest_id][choice_id] = self._contests[contest_id][choice_id] * ciphertext
            self.ballots_cast += other.ballots_cast
            self.total_weight += other.total_weight

        logger.info(
            f"Merged tally shard with {other.ballots_cast} ballots; total {self.ballots_cast}")


# ============================================================================
# THRESHOLD DECRYPTION
# ============================================================================


@dataclass(frozen=True)
class PartialTallyDecryption:
    """M_i = A^z_i for every (contest, choice)"""
    guardian_index: int
    contests: Dict[str, Dict[str, ElementModP]]


@dataclass
class DecryptedTally:
    counts: Dict[str, Dict[str, int]]
    ballots_cast: int
    total_weight: int
    guardian_indices: List[int] = field(default_factory=list)

    def count(self, contest_id: str, choice_id: str) -> int:
        return self.counts[contest_id][choice_id]


class TallyGuardian:
    """Holds one guardian's vote-key share for the decryption phase"""

    def __init__(self, index: int, shares: GuardianSecretShares):
        if shares.index != index:
            raise TallyError(f"Shares belong to guardian {shares.index}, not {index}")
        self.index = index
        self._share = shares.vote_share

    def decrypt(self, tally: EncryptedTally) -> PartialTallyDecryption:
        contests = {
            contest_id: {
                choice_id: ciphertext.alpha ** self._share
                for choice_id, ciphertext in choices.items()
            }
            for contest_id, choices in tally.contests.items()
        }
        logger.info(f"Guardian {self.index} produced a partial decryption")
        return PartialTallyDecryption(guardian_index=self.index, contests=contests)


def lagrange_coefficient(params: ElectionParameters, index: int, indices: Sequence[int]) -> ElementModQ:
    """w_i = prod(l) / prod(l - i) over the other participating indices"""
    numerator = params.element_q(1)
    denominator = params.element_q(1)
    for other in indices:
        if other == index:
            continue
        numerator = numerator * other
        denominator = denominator * (other - index)
    return numerator / denominator


class TallyAdmin:
    """Combines partial decryptions from at least k guardians"""

    def __init__(self, params: ElectionParameters):
        self.params = params

    def decrypt(
        self,
        partials: Sequence[PartialTallyDecryption],
        tally: EncryptedTally,
        public_keys: ElectionPublicKeys,
    ) -> DecryptedTally:
        indices = [partial.guardian_index for partial in partials]
        if len(set(indices)) != len(indices):
            raise TallyError(f"Duplicate guardian in partial decryptions: {sorted(indices)}")
        for index in indices:
            if not 1 <= index <= self.params.n:
                raise TallyError(f"Guardian index {index} outside [1, {self.params.n}]")
        if len(indices) < self.params.k:
            logger.error(
                f"Tally decryption needs {self.params.k} guardians, got {len(indices)}")
            raise TallyDecryptionFailed(
                f"Need at least {self.params.k} partial decryptions, got {len(indices)}",
                guardian_indices=sorted(indices))

        weights = {index: lagrange_coefficient(self.params, index, indices) for index in indices}
        vote_key = public_keys.vote_key
        contests = tally.contests

        counts: Dict[str, Dict[str, int]] = {}
        for contest_id, choices in contests.items():
            bound = tally.selection_bound(contest_id)
            counts[contest_id] = {}
            for choice_id, ciphertext in choices.items():
                combined = self.params.one_p()
                for partial in partials:
                    try:
                        share = partial.contests[contest_id][choice_id]
                    except KeyError:
                        raise TallyDecryptionFailed(
                            f"Guardian {partial.guardian_index} sent no partial decryption",
                            contest_id, choice_id)
                    combined = combined * (share ** weights[partial.guardian_index])

                target = ciphertext.beta / combined
                counts[contest_id][choice_id] = self._search(target, vote_key, bound, contest_id, choice_id)

        logger.info(
            f"Decrypted tally of {tally.ballots_cast} ballots with guardians {sorted(indices)}")
        return DecryptedTally(
            counts=counts,
            ballots_cast=tally.ballots_cast,
            total_weight=tally.total_weight,
            guardian_indices=sorted(indices),
        )

    def _search(self, target: ElementModP, vote_key: ElementModP, bound: int, contest_id: str, choice_id: str) -> int:
        candidate = self.params.one_p()
        for count in range(bound + 1):
            if candidate == target:
                return count
            candidate = candidate * vote_key
        logger.error(f"No count in [0, {bound}] matches {contest_id}/{choice_id}")
        raise TallyDecryptionFailed(
            f"No count in [0, {bound}] decrypts {contest_id}/{choice_id}", contest_id, choice_id)
