import dataclasses

import pytest

from conftest import run_ceremony
from group.group_arithmetic import ElectionParameters
from keyceremony.key_ceremony import (
    CeremonyStatus,
    ElectionPublicKeys,
    Guardian,
    GuardianRecord,
    GuardianRecordMismatch,
    KeyCeremonyError,
    KeyCeremonyStateError,
    SchnorrProof,
    ShareDecryptionFailed,
    ShareVerificationFailed,
    evaluate_polynomial,
)
from tally.tally_decryption import lagrange_coefficient
from verify.verification import GuardianPublicKeyVerification, VerificationFailed


def _exchange(params):
    """Fresh guardians that have encrypted but not yet decrypted shares"""
    guardians = [Guardian(index, params) for index in range(1, params.n + 1)]
    for guardian in guardians:
        guardian.generate_keys()
    views = [guardian.public_view() for guardian in guardians]
    shares = [share for guardian in guardians for share in guardian.encrypt_shares(views)]
    return guardians, views, shares


def _flip_commitment(record: GuardianRecord, guardian_index: int) -> GuardianRecord:
    views = []
    for view in record.guardians:
        if view.index == guardian_index:
            flipped = dataclasses.replace(view.vote_commitments[0], value=view.vote_commitments[0].value ^ 1)
            view = dataclasses.replace(view, vote_commitments=(flipped,) + view.vote_commitments[1:])
        views.append(view)
    return dataclasses.replace(record, guardians=tuple(views))


def test_honest_ceremony_verifies(guardians, guardian_record):
    assert all(guardian.status == CeremonyStatus.VERIFIED for guardian in guardians)
    assert [view.index for view in guardian_record.guardians] == [1, 2, 3]


def test_election_keys_are_product_of_constant_terms(params, guardians, guardian_record):
    vote_secret = sum((g.keys.vote_keys[0].secret_key for g in guardians), params.zero_q())
    data_secret = sum((g.keys.data_keys[0].secret_key for g in guardians), params.zero_q())

    assert guardian_record.election_public_keys.vote_key == params.g_pow(vote_secret)
    assert guardian_record.election_public_keys.data_key == params.g_pow(data_secret)
    assert ElectionPublicKeys.from_public_views(guardian_record.guardians) == guardian_record.election_public_keys


@pytest.mark.parametrize("indices", [[1, 2], [1, 3], [2, 3], [1, 2, 3]])
def test_any_threshold_subset_reconstructs_secret(params, guardians, indices):
    vote_secret = sum((g.keys.vote_keys[0].secret_key for g in guardians), params.zero_q())
    reconstructed = sum(
        (lagrange_coefficient(params, i, indices) * guardians[i - 1].secret_shares.vote_share for i in indices),
        params.zero_q(),
    )
    assert reconstructed == vote_secret


def test_evaluate_polynomial(params):
    coefficients = [params.element_q(3), params.element_q(2), params.element_q(1)]
    assert evaluate_polynomial(coefficients, 2, params.q).value == 3 + 4 + 4


def test_guardian_index_out_of_range(params):
    with pytest.raises(KeyCeremonyError):
        Guardian(0, params)
    with pytest.raises(KeyCeremonyError):
        Guardian(params.n + 1, params)


def test_steps_out_of_order(params):
    guardian = Guardian(1, params)
    with pytest.raises(KeyCeremonyStateError):
        guardian.encrypt_shares([])
    with pytest.raises(KeyCeremonyStateError):
        guardian.decrypt_shares([])
    with pytest.raises(KeyCeremonyStateError):
        guardian.public_view()

    guardian.generate_keys()
    with pytest.raises(KeyCeremonyStateError):
        guardian.generate_keys()


def test_encrypt_requires_every_view(params):
    first, second = Guardian(1, params), Guardian(2, params)
    first.generate_keys()
    second.generate_keys()
    with pytest.raises(KeyCeremonyError, match="missing public views"):
        first.encrypt_shares([second.public_view()])


def test_decrypt_requires_every_share(params):
    guardians, _, shares = _exchange(params)
    target = guardians[0]
    addressed = [share for share in shares if share.destination_index == target.index]
    with pytest.raises(KeyCeremonyError, match="missing shares"):
        target.decrypt_shares(addressed[:1])


def test_tampered_share_challenge_rejected(params):
    guardians, _, shares = _exchange(params)
    target = guardians[1]
    addressed = [share for share in shares if share.destination_index == target.index]
    tampered = [
        dataclasses.replace(share, challenge=share.challenge + 1) if share.source_index == 1 else share
        for share in addressed
    ]
    with pytest.raises(ShareDecryptionFailed) as excinfo:
        target.decrypt_shares(tampered)
    assert excinfo.value.source_index == 1


def test_tampered_share_ciphertext_rejected(params):
    guardians, _, shares = _exchange(params)
    target = guardians[2]
    addressed = [share for share in shares if share.destination_index == target.index]
    tampered = [
        dataclasses.replace(share, c1=bytes([share.c1[0] ^ 1]) + share.c1[1:]) if share.source_index == 2 else share
        for share in addressed
    ]
    with pytest.raises(ShareDecryptionFailed) as excinfo:
        target.decrypt_shares(tampered)
    assert excinfo.value.source_index == 2


def test_share_inconsistent_with_commitments(params):
    guardians, views, shares = _exchange(params)
    for guardian in guardians:
        guardian.decrypt_shares([share for share in shares if share.destination_index == guardian.index])

    target = guardians[0]
    target._vote_evaluations[3] = target._vote_evaluations[3] + 1
    with pytest.raises(ShareVerificationFailed) as excinfo:
        target.verify(GuardianRecord.create(params, views))
    assert excinfo.value.peer_index == 3


def test_flipped_commitment_detected_with_guardian_index(guardians, guardian_record):
    tampered = _flip_commitment(guardian_record, 2)
    with pytest.raises(GuardianRecordMismatch) as excinfo:
        guardians[0].verify(tampered)
    assert excinfo.value.guardian_index == 2


def test_flipped_commitment_fails_key_verification(params, guardian_record):
    tampered = _flip_commitment(guardian_record, 3)
    with pytest.raises(VerificationFailed) as excinfo:
        GuardianPublicKeyVerification(params).verify(tampered.guardians)
    assert excinfo.value.subsection in ("2.A", "2.C")
    assert excinfo.value.guardian_index == 3


def test_tampered_key_proof_fails_challenge_check(params, guardian_record):
    views = list(guardian_record.guardians)
    proof = views[0].data_proof
    views[0] = dataclasses.replace(
        views[0], data_proof=SchnorrProof(challenge=proof.challenge + 1, responses=proof.responses))

    with pytest.raises(VerificationFailed) as excinfo:
        GuardianPublicKeyVerification(params).verify(views)
    assert excinfo.value.subsection == "2.C"
    assert excinfo.value.guardian_index == 1


def test_record_for_different_parameters_rejected(guardians, guardian_record):
    other = ElectionParameters.create(n=3, k=3)
    record = dataclasses.replace(
        guardian_record,
        guardian_parameters=other.guardians,
        parameter_base_hash=other.parameter_base_hash,
    )
    with pytest.raises(VerificationFailed) as excinfo:
        guardians[0].verify(record)
    assert excinfo.value.subsection == "1.E"


def test_single_guardian_ceremony():
    params = ElectionParameters.create(n=1, k=1)
    guardians, record = run_ceremony(params)
    assert record.election_public_keys.vote_key == guardians[0].keys.vote_keys[0].public_key
    assert guardians[0].secret_shares.vote_share == guardians[0].keys.vote_keys[0].secret_key


def test_reset(params):
    guardian = Guardian(1, params)
    guardian.generate_keys()
    guardian.reset()
    assert guardian.status == CeremonyStatus.UNINITIALIZED
    with pytest.raises(KeyCeremonyStateError):
        guardian.keys
