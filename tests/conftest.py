"""Shared fixtures: one 3-guardian, threshold-2 ceremony for the whole session."""

from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from ballot.ballot_encryption import BallotEncryptor, EncryptionRecord
from ballot.election_models import (
    Ballot,
    BallotChoice,
    BallotContest,
    BallotStyle,
    ChainingMode,
    Choice,
    Contest,
    Manifest,
)
from group.group_arithmetic import ElectionParameters, ElementModQ
from keyceremony.key_ceremony import Guardian, GuardianRecord


def run_ceremony(params: ElectionParameters) -> Tuple[List[Guardian], GuardianRecord]:
    guardians = [Guardian(index, params) for index in range(1, params.n + 1)]
    for guardian in guardians:
        guardian.generate_keys()

    views = [guardian.public_view() for guardian in guardians]
    outgoing = [share for guardian in guardians for share in guardian.encrypt_shares(views)]
    for guardian in guardians:
        guardian.decrypt_shares([share for share in outgoing if share.destination_index == guardian.index])

    record = GuardianRecord.create(params, views)
    for guardian in guardians:
        guardian.verify(record)
    return guardians, record


def build_manifest(chaining_mode: ChainingMode = ChainingMode.SIMPLE) -> Manifest:
    return Manifest(
        election_id="test-election",
        contests=[
            Contest(id="mayor", name="Mayor", index=1, selection_limit=1, option_selection_limit=1,
                    choices=[Choice(id="alice", name="Alice", index=1),
                             Choice(id="bob", name="Bob", index=2)]),
            Contest(id="council", name="Council", index=2, selection_limit=2, option_selection_limit=1,
                    choices=[Choice(id="carol", name="Carol", index=1),
                             Choice(id="dave", name="Dave", index=2),
                             Choice(id="erin", name="Erin", index=3)]),
        ],
        ballot_styles=[
            BallotStyle(id="all", name="All contests", contest_ids=["mayor", "council"]),
            BallotStyle(id="mayor-only", name="Mayor only", contest_ids=["mayor"]),
        ],
        optional_contest_data_max_length=40,
        include_overvotes=True,
        include_nullvotes=True,
        include_undervotes=True,
        include_writeins=True,
        chaining_mode=chaining_mode,
    )


def make_ballot(
    ballot_id: str,
    mayor: Optional[str] = "alice",
    council: Sequence[str] = ("carol",),
    style: str = "all",
    weight: int = 1,
    writeins: int = 0,
    contest_data: Optional[str] = None,
) -> Ballot:
    contests = [
        BallotContest(
            id="mayor",
            choices=[BallotChoice("alice", int(mayor == "alice")), BallotChoice("bob", int(mayor == "bob"))],
            num_writeins_selected=writeins,
            contest_data=contest_data,
        )
    ]
    if style == "all":
        contests.append(BallotContest(
            id="council",
            choices=[BallotChoice(choice_id, int(choice_id in council)) for choice_id in ("carol", "dave", "erin")],
        ))
    return Ballot(id=ballot_id, ballot_style_id=style, contests=contests, weight=weight)


@pytest.fixture(scope="session")
def params() -> ElectionParameters:
    return ElectionParameters.create(n=3, k=2)


@pytest.fixture(scope="session")
def ceremony(params):
    return run_ceremony(params)


@pytest.fixture(scope="session")
def guardians(ceremony) -> List[Guardian]:
    return ceremony[0]


@pytest.fixture(scope="session")
def guardian_record(ceremony) -> GuardianRecord:
    return ceremony[1]


@pytest.fixture(scope="session")
def data_secret(params, guardians) -> ElementModQ:
    """Joint auxiliary-data secret; only reconstructible in tests"""
    return sum((guardian.keys.data_keys[0].secret_key for guardian in guardians), params.zero_q())


@pytest.fixture(scope="session")
def manifest() -> Manifest:
    return build_manifest()


@pytest.fixture(scope="session")
def encryption_record(params, manifest, guardian_record) -> EncryptionRecord:
    return EncryptionRecord.create(params, manifest, guardian_record)


@pytest.fixture(scope="session")
def encryptor(encryption_record) -> BallotEncryptor:
    return BallotEncryptor(encryption_record, "device-1")


@pytest.fixture(scope="session")
def cast_ballots(encryptor):
    """Three chained ballots from one device"""
    plaintexts = [
        make_ballot("ballot-1", mayor="alice", council=("carol", "dave")),
        make_ballot("ballot-2", mayor="bob", council=("erin",), contest_data="write-in: zed"),
        make_ballot("ballot-3", mayor=None, council=(), weight=2),
    ]
    encrypted = []
    previous = None
    for ballot in plaintexts:
        result = encryptor.encrypt(ballot, previous)
        encrypted.append(result)
        previous = result.confirmation_code
    return encrypted


@pytest.fixture(scope="session")
def expected_counts() -> Dict[str, Dict[str, int]]:
    return {
        "mayor": {"alice": 1, "bob": 1},
        "council": {"carol": 1, "dave": 1, "erin": 1},
    }
