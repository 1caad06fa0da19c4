"""认领与状态迁移测试"""
import pytest

from gradehub.extensions import db
from gradehub.errors import InvalidTransition, ScopeViolation
from gradehub.models import Submission, SubmissionStatus, AuditLogEntry
from gradehub.services import ClaimService
from gradehub.services.claim_service import is_allowed

from conftest import ADMIN_ID, TA_ID, OUTSIDER_ID, ASSIGNMENT_ID


@pytest.mark.parametrize('old, new, allowed', [
    ('unstarted', 'in_progress', True),
    ('unstarted', 'done', False),
    ('in_progress', 'done', True),
    ('done', 'in_progress', True),
    ('done', 'unstarted', False),
    ('flagged', 'in_progress', True),
    ('error', 'flagged', True),
    ('error', 'done', False),
    ('done', 'done', True),
    ('in_progress', 'bogus', False),
])
def test_transition_table(old, new, allowed):
    assert is_allowed(old, new) is allowed


def test_claim_starts_work(alice_submission):
    submission = ClaimService.claim(alice_submission, TA_ID)

    assert submission.claimed_by_ta_id == TA_ID
    assert submission.claimed_at is not None
    assert submission.last_opened_at is not None
    assert submission.status == SubmissionStatus.IN_PROGRESS


def test_claim_takeover_is_audited(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    submission = ClaimService.claim(alice_submission, ADMIN_ID)

    assert submission.claimed_by_ta_id == ADMIN_ID
    entries = AuditLogEntry.query.filter_by(action='claim', entity_id=str(alice_submission)).order_by(
        AuditLogEntry.id).all()
    assert [e.actor_id for e in entries] == [TA_ID, ADMIN_ID]
    assert entries[1].detail['previous_claimant'] == TA_ID
    assert entries[1].detail['takeover'] is True
    assert entries[0].detail['takeover'] is False


def test_reclaim_by_same_ta_keeps_claimed_at(alice_submission):
    first = ClaimService.claim(alice_submission, TA_ID)
    claimed_at = first.claimed_at
    opened_at = first.last_opened_at

    again = ClaimService.claim(alice_submission, TA_ID)
    assert again.claimed_at == claimed_at
    assert again.last_opened_at >= opened_at


def test_reclaim_reopens_done_submission(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    ClaimService.update_status(alice_submission, SubmissionStatus.DONE, TA_ID)

    submission = ClaimService.claim(alice_submission, TA_ID)

    assert submission.status == SubmissionStatus.IN_PROGRESS
    entry = AuditLogEntry.query.filter_by(action='claim').order_by(AuditLogEntry.id.desc()).first()
    assert entry.detail['old_status'] == 'done'
    assert entry.detail['new_status'] == 'in_progress'


def test_reclaim_reopens_flagged_submission(alice_submission):
    ClaimService.update_status(alice_submission, SubmissionStatus.FLAGGED, TA_ID)
    submission = ClaimService.claim(alice_submission, ADMIN_ID)
    assert submission.status == SubmissionStatus.IN_PROGRESS


def test_claim_keeps_error_status(alice_submission):
    ClaimService.update_status(alice_submission, SubmissionStatus.ERROR, TA_ID)
    submission = ClaimService.claim(alice_submission, TA_ID)

    assert submission.status == SubmissionStatus.ERROR
    assert submission.claimed_by_ta_id == TA_ID


def test_release(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    submission = ClaimService.release(alice_submission, TA_ID)

    assert submission.claimed_by_ta_id is None
    assert submission.claimed_at is None
    entry = AuditLogEntry.query.filter_by(action='release').one()
    assert entry.detail == {'previous_claimant': TA_ID, 'own_claim': True}


def test_touch_updates_last_opened(alice_submission):
    before = db.session.get(Submission, alice_submission).last_opened_at
    submission = ClaimService.touch(alice_submission, TA_ID)
    assert before is None
    assert submission.last_opened_at is not None
    entry = AuditLogEntry.query.filter_by(action='touch').one()
    assert entry.actor_id == TA_ID


def test_out_of_scope_actor_cannot_touch(alice_submission):
    with pytest.raises(ScopeViolation):
        ClaimService.touch(alice_submission, OUTSIDER_ID)
    assert db.session.get(Submission, alice_submission).last_opened_at is None
    assert AuditLogEntry.query.filter_by(action='touch', result='failed').count() == 1


def test_status_change_is_audited(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    submission = ClaimService.update_status(alice_submission, SubmissionStatus.DONE, TA_ID)

    assert submission.status == SubmissionStatus.DONE
    entry = AuditLogEntry.query.filter_by(action='status_change', result='success').one()
    assert entry.detail == {'old_status': 'in_progress', 'new_status': 'done'}


def test_illegal_transition_is_rejected_and_state_kept(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    ClaimService.update_status(alice_submission, SubmissionStatus.DONE, TA_ID)

    with pytest.raises(InvalidTransition):
        ClaimService.update_status(alice_submission, SubmissionStatus.UNSTARTED, TA_ID)

    assert db.session.get(Submission, alice_submission).status == SubmissionStatus.DONE
    failed = AuditLogEntry.query.filter_by(action='status_change', result='failed').one()
    assert failed.detail['new_status'] == 'unstarted'


def test_unknown_status_is_rejected(alice_submission):
    with pytest.raises(InvalidTransition):
        ClaimService.update_status(alice_submission, 'archived', TA_ID)
    assert db.session.get(Submission, alice_submission).status == SubmissionStatus.UNSTARTED


def test_out_of_scope_actor_cannot_claim(alice_submission):
    with pytest.raises(ScopeViolation):
        ClaimService.claim(alice_submission, OUTSIDER_ID)
    assert db.session.get(Submission, alice_submission).claimed_by_ta_id is None


def test_resume_point_returns_latest_open_submission(import_archive):
    first = import_archive('S10293_hw1.zip', {'notes.txt': 'a'})['submission_id']
    second = import_archive('20231001_hw1.zip', {'notes.txt': 'b'})['submission_id']

    ClaimService.claim(first, TA_ID)
    ClaimService.claim(second, TA_ID)
    assert ClaimService.resume_point(TA_ID, ASSIGNMENT_ID).id == second

    ClaimService.touch(first, TA_ID)
    assert ClaimService.resume_point(TA_ID, ASSIGNMENT_ID).id == first

    ClaimService.update_status(first, SubmissionStatus.DONE, TA_ID)
    assert ClaimService.resume_point(TA_ID, ASSIGNMENT_ID).id == second
    assert ClaimService.resume_point(ADMIN_ID, ASSIGNMENT_ID) is None
