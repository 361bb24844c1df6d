import dataclasses

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
from group.group_arithmetic import int_to_bytes
from keyceremony.key_ceremony import GuardianSecretShares
from tally.tally_decryption import (
    EncryptedTally,
    TallyAdmin,
    TallyDecryptionFailed,
    TallyError,
    TallyGuardian,
    lagrange_coefficient,
)


def _partials(guardians, tally, indices):
    return [TallyGuardian(i, guardians[i - 1].secret_shares).decrypt(tally) for i in indices]


def _tally_of(manifest, params, ballots):
    tally = EncryptedTally(manifest, params)
    for ballot in ballots:
        tally.add_ballot(ballot)
    return tally


@pytest.fixture(scope="module")
def referendum():
    return Manifest(
        election_id="referendum",
        contests=[
            Contest(id="question", name="Question", index=1, selection_limit=1, option_selection_limit=1,
                    choices=[Choice(id="yes", name="Yes", index=1), Choice(id="no", name="No", index=2)]),
        ],
        ballot_styles=[BallotStyle(id="only", name="Only", contest_ids=["question"])],
        chaining_mode=ChainingMode.SIMPLE,
    )


def _vote(ballot_id, choice_id, weight=1):
    return Ballot(
        id=ballot_id,
        ballot_style_id="only",
        contests=[BallotContest(id="question", choices=[
            BallotChoice("yes", int(choice_id == "yes")),
            BallotChoice("no", int(choice_id == "no")),
        ])],
        weight=weight,
    )


def test_end_to_end_threshold_independence(params, guardians, guardian_record, referendum):
    record = EncryptionRecord.create(params, referendum, guardian_record)
    encryptor = BallotEncryptor(record, "booth-1")

    first = encryptor.encrypt(_vote("b1", "yes"))
    second = encryptor.encrypt(_vote("b2", "no"), first.confirmation_code)
    assert second.chaining_field == int_to_bytes(1) + first.confirmation_code

    tally = _tally_of(referendum, params, [first, second])
    admin = TallyAdmin(params)
    keys = guardian_record.election_public_keys

    result_12 = admin.decrypt(_partials(guardians, tally, [1, 2]), tally, keys)
    result_13 = admin.decrypt(_partials(guardians, tally, [1, 3]), tally, keys)

    assert result_12.counts == {"question": {"yes": 1, "no": 1}}
    assert result_13.counts == result_12.counts
    assert result_12.ballots_cast == 2
    assert result_13.guardian_indices == [1, 3]


def test_below_threshold_fails(params, guardians, guardian_record, manifest, cast_ballots):
    tally = _tally_of(manifest, params, cast_ballots)
    with pytest.raises(TallyDecryptionFailed) as excinfo:
        TallyAdmin(params).decrypt(_partials(guardians, tally, [2]), tally, guardian_record.election_public_keys)
    assert excinfo.value.guardian_indices == [2]


def test_duplicate_guardian_rejected(params, guardians, guardian_record, manifest, cast_ballots):
    tally = _tally_of(manifest, params, cast_ballots)
    partials = _partials(guardians, tally, [1]) * 2
    with pytest.raises(TallyError, match="Duplicate"):
        TallyAdmin(params).decrypt(partials, tally, guardian_record.election_public_keys)


def test_all_guardians_decrypt(params, guardians, guardian_record, manifest, cast_ballots, expected_counts):
    tally = _tally_of(manifest, params, cast_ballots)
    result = TallyAdmin(params).decrypt(
        _partials(guardians, tally, [3, 1, 2]), tally, guardian_record.election_public_keys)
    assert result.counts == expected_counts
    assert result.total_weight == 4
    assert result.count("council", "erin") == 1


def test_aggregation_is_order_independent(params, manifest, cast_ballots):
    forward = _tally_of(manifest, params, cast_ballots)
    backward = _tally_of(manifest, params, list(reversed(cast_ballots)))
    rotated = _tally_of(manifest, params, cast_ballots[1:] + cast_ballots[:1])
    assert forward.contests == backward.contests == rotated.contests


def test_sharded_merge_matches_single_tally(params, manifest, cast_ballots):
    single = _tally_of(manifest, params, cast_ballots)
    merged = _tally_of(manifest, params, cast_ballots[:1])
    merged.merge(_tally_of(manifest, params, cast_ballots[1:]))

    assert merged.contests == single.contests
    assert merged.ballots_cast == single.ballots_cast == 3
    assert merged.total_weight == single.total_weight == 4


def test_merge_rejects_other_election(params, manifest, referendum):
    tally = EncryptedTally(manifest, params)
    with pytest.raises(TallyError):
        tally.merge(EncryptedTally(referendum, params))
    with pytest.raises(TallyError):
        tally.merge(tally)


def test_empty_tally_decrypts_to_zero(params, guardians, guardian_record, manifest):
    tally = EncryptedTally(manifest, params)
    result = TallyAdmin(params).decrypt(_partials(guardians, tally, [1, 2]), tally, guardian_record.election_public_keys)
    assert all(count == 0 for counts in result.counts.values() for count in counts.values())


def test_weighted_ballot_counts_weight(params, guardians, guardian_record, referendum):
    record = EncryptionRecord.create(params, referendum, guardian_record)
    encryptor = BallotEncryptor(record, "booth-2")
    tally = _tally_of(referendum, params, [
        encryptor.encrypt(_vote("heavy", "yes", weight=3)),
        encryptor.encrypt(_vote("light", "no")),
    ])
    assert tally.selection_bound("question") == 4

    result = TallyAdmin(params).decrypt(_partials(guardians, tally, [2, 3]), tally, guardian_record.election_public_keys)
    assert result.counts == {"question": {"yes": 3, "no": 1}}


def test_unknown_contest_rejected(params, manifest, cast_ballots):
    ballot = cast_ballots[0]
    stray = dataclasses.replace(ballot, contests=(dataclasses.replace(ballot.contests[0], id="sheriff"),))
    tally = EncryptedTally(manifest, params)
    with pytest.raises(TallyError, match="unknown contest"):
        tally.add_ballot(stray)
    assert tally.ballots_cast == 0


def test_tampered_tally_fails_cleanly(params, guardians, guardian_record, manifest, cast_ballots):
    tally = _tally_of(manifest, params, cast_ballots)
    ciphertext = tally._contests["mayor"]["alice"]
    tally._contests["mayor"]["alice"] = dataclasses.replace(ciphertext, beta=ciphertext.beta * params.generator)

    with pytest.raises(TallyDecryptionFailed) as excinfo:
        TallyAdmin(params).decrypt(_partials(guardians, tally, [1, 2]), tally, guardian_record.election_public_keys)
    assert (excinfo.value.contest_id, excinfo.value.choice_id) == ("mayor", "alice")


def test_lagrange_coefficients(params):
    assert lagrange_coefficient(params, 1, [1, 2]) == params.element_q(2)
    assert lagrange_coefficient(params, 2, [1, 2]) == params.element_q(-1)
    assert lagrange_coefficient(params, 1, [1]) == params.element_q(1)


def test_tally_guardian_requires_own_shares(params, guardians):
    shares = guardians[0].secret_shares
    with pytest.raises(TallyError):
        TallyGuardian(2, shares)
    assert isinstance(shares, GuardianSecretShares)
