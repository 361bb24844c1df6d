import pytest

from ballot.ballot_encryption import (
    CONTEST_DATA_LABEL,
    OVERVOTE_LABEL,
    BallotEncryptor,
    EncryptionRecord,
    ValidationError,
    compute_contest_nonce,
    compute_device_hash,
    compute_selection_nonce,
    contest_data_padded_length,
    decrypt_ballot_nonce,
    decrypt_contest_data,
)
from ballot.election_models import Ballot, ChainingMode, Contest
from ballot.range_proofs import (
    DecryptionError,
    elgamal_decrypt_with_nonce,
    elgamal_encrypt,
    make_range_proof,
    range_proof_challenge,
    recompute_range_commitments,
    sum_challenges,
    verify_range_proof,
)
from conftest import build_manifest, make_ballot
from group.group_arithmetic import InvalidInputError, int_to_bytes

HEADER = [int_to_bytes(1), int_to_bytes(1)]
KEY = bytes(32)


def _open_selections(params, record, data_secret, encrypted, contest_id):
    """Recover the plaintext selections of one contest through the ballot nonce"""
    ballot_nonce = decrypt_ballot_nonce(
        params, encrypted.selection_identifier_hash, encrypted.encrypted_ballot_nonce, data_secret)
    contest = encrypted.contest(contest_id)
    manifest_contest = record.manifest.contest(contest_id)
    values = {}
    for selection, choice in zip(contest.selections, manifest_contest.choices):
        nonce = compute_selection_nonce(
            params, encrypted.selection_identifier_hash, contest.index, choice.index, ballot_nonce)
        values[choice.id] = elgamal_decrypt_with_nonce(
            params, record.election_public_keys.vote_key, selection.ciphertext, nonce,
            manifest_contest.option_selection_limit)
    return ballot_nonce, values


def _open_metadata(params, record, encrypted, ballot_nonce, contest_id, label, limit):
    contest = encrypted.contest(contest_id)
    nonce = compute_contest_nonce(params, encrypted.selection_identifier_hash, contest.index, label, ballot_nonce)
    value = dict(contest.metadata())[label]
    return elgamal_decrypt_with_nonce(params, record.election_public_keys.vote_key, value.ciphertext, nonce, limit)


# ----------------------------------------------------------------------
# ElGamal and range proofs
# ----------------------------------------------------------------------


@pytest.mark.parametrize("value", [0, 1, 2, 3])
def test_elgamal_decrypts_with_nonce(params, guardian_record, value):
    key = guardian_record.election_public_keys.vote_key
    nonce = params.random_q()
    ciphertext = elgamal_encrypt(params, key, value, nonce)
    assert elgamal_decrypt_with_nonce(params, key, ciphertext, nonce, 3) == value


def test_elgamal_decrypt_out_of_bounds(params, guardian_record):
    key = guardian_record.election_public_keys.vote_key
    nonce = params.random_q()
    ciphertext = elgamal_encrypt(params, key, 5, nonce)
    with pytest.raises(DecryptionError):
        elgamal_decrypt_with_nonce(params, key, ciphertext, nonce, 3)


def test_ciphertext_product_adds_values(params, guardian_record):
    key = guardian_record.election_public_keys.vote_key
    n1, n2 = params.random_q(), params.random_q()
    product = elgamal_encrypt(params, key, 1, n1) * elgamal_encrypt(params, key, 2, n2)
    assert elgamal_decrypt_with_nonce(params, key, product, n1 + n2, 5) == 3
    assert elgamal_decrypt_with_nonce(params, key, product ** 2, (n1 + n2) * 2, 6) == 6


@pytest.mark.parametrize("value,limit", [(0, 1), (1, 1), (0, 2), (2, 2), (1, 3)])
def test_range_proof_challenges_sum_to_hash(params, guardian_record, value, limit):
    key = guardian_record.election_public_keys.vote_key
    nonce = params.random_q()
    ciphertext = elgamal_encrypt(params, key, value, nonce)
    proof = make_range_proof(params, KEY, HEADER, ciphertext, nonce, value, limit, key)

    assert len(proof.pairs) == limit + 1
    commitments = recompute_range_commitments(params, key, ciphertext, proof)
    assert sum_challenges(params, proof) == range_proof_challenge(params, KEY, HEADER, ciphertext, commitments)
    assert verify_range_proof(params, KEY, HEADER, ciphertext, proof, key, limit)


def test_range_proof_bound_to_context(params, guardian_record):
    key = guardian_record.election_public_keys.vote_key
    nonce = params.random_q()
    ciphertext = elgamal_encrypt(params, key, 1, nonce)
    proof = make_range_proof(params, KEY, HEADER, ciphertext, nonce, 1, 1, key)

    assert not verify_range_proof(params, KEY, HEADER, ciphertext, proof, key, 2)
    assert not verify_range_proof(params, KEY, [int_to_bytes(2), int_to_bytes(1)], ciphertext, proof, key, 1)
    assert not verify_range_proof(params, bytes([1] * 32), HEADER, ciphertext, proof, key, 1)


def test_range_proof_for_out_of_range_value_rejected(params, guardian_record):
    key = guardian_record.election_public_keys.vote_key
    nonce = params.random_q()
    ciphertext = elgamal_encrypt(params, key, 2, nonce)
    with pytest.raises(InvalidInputError):
        make_range_proof(params, KEY, HEADER, ciphertext, nonce, 2, 1, key)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------


def test_valid_ballot_passes_validation(encryptor):
    assert encryptor.validate(make_ballot("ok")).is_valid
    assert encryptor.validate(make_ballot("mayor-only", style="mayor-only")).is_valid


def test_validation_reports_errors_as_results(encryptor):
    ballot = make_ballot("bad")
    ballot.contests[0].choices[0].value = 2
    ballot.contests[1].choices.pop()

    result = encryptor.validate(ballot)
    assert not result.is_valid
    located = {(error.contest_id, error.choice_id) for error in result.errors}
    assert ("mayor", "alice") in located
    assert ("council", "erin") in located


@pytest.mark.parametrize("ballot,contest_id,fragment", [
    (make_ballot("w", writeins=2), "mayor", "write-in"),
    (make_ballot("d", contest_data="x" * 41), "mayor", "contest data"),
    (Ballot("s", "nope", []), None, "unknown ballot style"),
    (make_ballot("weight", weight=0), None, "weight"),
])
def test_validation_failures(encryptor, ballot, contest_id, fragment):
    result = encryptor.validate(ballot)
    assert not result.is_valid
    assert result.errors[0].contest_id == contest_id
    assert fragment in result.errors[0].reason


def test_validation_rejects_missing_and_extra_contests(encryptor):
    missing = make_ballot("missing")
    missing.contests.pop()
    assert any(error.contest_id == "council" for error in encryptor.validate(missing).errors)

    extra = make_ballot("extra")
    extra.ballot_style_id = "mayor-only"
    assert any(error.reason == "contest not in ballot style" for error in encryptor.validate(extra).errors)


def test_contest_data_rejected_when_not_accepted(params, guardian_record):
    manifest = build_manifest()
    manifest.optional_contest_data_max_length = 0
    encryptor = BallotEncryptor(EncryptionRecord.create(params, manifest, guardian_record), "device-x")
    result = encryptor.validate(make_ballot("d", contest_data="hello"))
    assert result.errors[0].reason == "contest data not accepted"


def test_encrypt_raises_validation_error(encryptor):
    ballot = make_ballot("bad")
    ballot.contests[0].choices[1].value = -1
    with pytest.raises(ValidationError) as excinfo:
        encryptor.encrypt(ballot)
    assert excinfo.value.contest_id == "mayor"
    assert excinfo.value.choice_id == "bob"


@pytest.mark.parametrize("value", [True, 0.5, 1.0, "1", None])
def test_non_integer_choice_value_rejected(encryptor, value):
    ballot = make_ballot("typed")
    ballot.contests[0].choices[0].value = value

    result = encryptor.validate(ballot)
    assert [(error.contest_id, error.choice_id) for error in result.errors] == [("mayor", "alice")]
    assert "not an integer" in result.errors[0].reason
    with pytest.raises(ValidationError) as excinfo:
        encryptor.encrypt(ballot)
    assert excinfo.value.choice_id == "alice"


@pytest.mark.parametrize("weight", [True, 2.0, "3"])
def test_non_integer_weight_rejected(encryptor, weight):
    ballot = make_ballot("heavy")
    ballot.weight = weight

    result = encryptor.validate(ballot)
    assert result.errors[0].contest_id is None
    assert "not an integer" in result.errors[0].reason
    with pytest.raises(ValidationError):
        encryptor.encrypt(ballot)


def test_non_integer_writein_count_rejected(encryptor):
    ballot = make_ballot("writein")
    ballot.contests[1].num_writeins_selected = 1.0
    result = encryptor.validate(ballot)
    assert [(error.contest_id, error.choice_id) for error in result.errors] == [("council", None)]


def test_contest_without_choices_rejected():
    with pytest.raises(InvalidInputError, match="no choices"):
        Contest(id="empty", name="Empty", index=3, selection_limit=1, option_selection_limit=1, choices=[])


# ----------------------------------------------------------------------
# Encryption
# ----------------------------------------------------------------------


def test_encrypted_ballot_shape(cast_ballots, manifest):
    encrypted = cast_ballots[0]
    assert len(encrypted.selection_identifier) == 32
    assert len(encrypted.confirmation_code) == 32
    assert [contest.id for contest in encrypted.contests] == ["mayor", "council"]

    council = encrypted.contest("council")
    assert [selection.choice_id for selection in council.selections] == ["carol", "dave", "erin"]
    assert all(len(selection.proof.pairs) == 2 for selection in council.selections)
    assert len(council.proof.pairs) == 3
    assert [label for label, _ in council.metadata()] == ["overvote", "nullvote", "undervote", "writein"]
    assert council.contest_data is None


def test_selection_identifiers_are_fresh(cast_ballots):
    identifiers = {ballot.selection_identifier for ballot in cast_ballots}
    assert len(identifiers) == len(cast_ballots)


def test_selections_decrypt_through_ballot_nonce(params, encryption_record, data_secret, cast_ballots):
    _, mayor = _open_selections(params, encryption_record, data_secret, cast_ballots[1], "mayor")
    _, council = _open_selections(params, encryption_record, data_secret, cast_ballots[1], "council")
    assert mayor == {"alice": 0, "bob": 1}
    assert council == {"carol": 0, "dave": 0, "erin": 1}


def test_overvote_zeroes_selections(params, encryptor, encryption_record, data_secret):
    encrypted = encryptor.encrypt(make_ballot("over", council=("carol", "dave", "erin")))

    ballot_nonce, council = _open_selections(params, encryption_record, data_secret, encrypted, "council")
    assert council == {"carol": 0, "dave": 0, "erin": 0}

    def metadata(label, limit):
        return _open_metadata(params, encryption_record, encrypted, ballot_nonce, "council", label, limit)

    assert metadata(OVERVOTE_LABEL, 1) == 1
    assert metadata("nullvote", 1) == 0
    assert metadata("undervote", 2) == 0


def test_empty_contest_is_null_and_undervoted(params, encryption_record, data_secret, cast_ballots):
    encrypted = cast_ballots[2]
    ballot_nonce, mayor = _open_selections(params, encryption_record, data_secret, encrypted, "mayor")
    assert mayor == {"alice": 0, "bob": 0}

    def metadata(contest_id, label, limit):
        return _open_metadata(params, encryption_record, encrypted, ballot_nonce, contest_id, label, limit)

    assert metadata("mayor", "nullvote", 1) == 1
    assert metadata("mayor", "undervote", 1) == 1
    assert metadata("council", "undervote", 2) == 2
    assert metadata("council", OVERVOTE_LABEL, 1) == 0


def test_writein_count_encrypted(params, encryptor, encryption_record, data_secret):
    encrypted = encryptor.encrypt(make_ballot("writein", mayor=None, writeins=1))
    ballot_nonce, _ = _open_selections(params, encryption_record, data_secret, encrypted, "mayor")
    assert _open_metadata(params, encryption_record, encrypted, ballot_nonce, "mayor", "writein", 1) == 1
    assert _open_metadata(params, encryption_record, encrypted, ballot_nonce, "mayor", "nullvote", 1) == 0


def test_contest_data_round_trip(params, encryption_record, data_secret, cast_ballots):
    encrypted = cast_ballots[1]
    contest = encrypted.contest("mayor")
    assert len(contest.contest_data.c1) == contest_data_padded_length(40) == 64

    ballot_nonce = decrypt_ballot_nonce(
        params, encrypted.selection_identifier_hash, encrypted.encrypted_ballot_nonce, data_secret)
    nonce = compute_contest_nonce(
        params, encrypted.selection_identifier_hash, contest.index, CONTEST_DATA_LABEL, ballot_nonce)
    text = decrypt_contest_data(
        params, encryption_record.election_public_keys.data_key,
        encrypted.selection_identifier_hash, contest.index, contest.contest_data, nonce)
    assert text == "write-in: zed"


def test_confirmation_codes_chain(encryption_record, cast_ballots):
    device_hash = compute_device_hash(encryption_record.extended_base_hash, "device-1")
    mode = int_to_bytes(int(ChainingMode.SIMPLE))

    assert cast_ballots[0].chaining_field == mode + device_hash
    assert cast_ballots[1].chaining_field == mode + cast_ballots[0].confirmation_code
    assert cast_ballots[2].chaining_field == mode + cast_ballots[1].confirmation_code


def test_unchained_manifest_ignores_previous_code(params, guardian_record):
    record = EncryptionRecord.create(params, build_manifest(ChainingMode.NONE), guardian_record)
    encryptor = BallotEncryptor(record, "device-2")
    first = encryptor.encrypt(make_ballot("n1"))
    second = encryptor.encrypt(make_ballot("n2"), first.confirmation_code)

    expected = int_to_bytes(0) + compute_device_hash(record.extended_base_hash, "device-2")
    assert first.chaining_field == expected
    assert second.chaining_field == expected


def test_manifest_changes_base_hashes(params, guardian_record, encryption_record):
    other = EncryptionRecord.create(params, build_manifest(ChainingMode.NONE), guardian_record)
    assert other.election_base_hash != encryption_record.election_base_hash
    assert other.extended_base_hash != encryption_record.extended_base_hash
