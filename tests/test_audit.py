"""审计日志测试"""
import pytest

from gradehub.extensions import db
from gradehub.models import AuditLogEntry, AuditLogImmutable
from gradehub.services import AuditService, ClaimService, GradingService
from gradehub.models import SubmissionStatus

from conftest import ADMIN_ID, TA_ID


def test_sequence_numbers_increase(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    ClaimService.update_status(alice_submission, SubmissionStatus.DONE, TA_ID)

    ids = [e.id for e in AuditLogEntry.query.order_by(AuditLogEntry.created_at, AuditLogEntry.id).all()]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


def test_entries_cannot_be_modified(alice_submission):
    entry = AuditLogEntry.query.first()
    entry.action = 'tampered'
    with pytest.raises(AuditLogImmutable):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AuditLogEntry, entry.id).action != 'tampered'


def test_entries_cannot_be_deleted(alice_submission):
    entry = AuditLogEntry.query.first()
    db.session.delete(entry)
    with pytest.raises(AuditLogImmutable):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AuditLogEntry, entry.id) is not None


def test_history_is_in_order(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    GradingService.save_grade(alice_submission, 'q1', 5, actor_id=TA_ID)
    ClaimService.update_status(alice_submission, SubmissionStatus.DONE, TA_ID)

    actions = [e.action for e in AuditService.history('submission', alice_submission)]
    assert actions == ['import_submission', 'auto_match', 'claim', 'save_grade', 'status_change']


def test_failures_are_logged_with_reason(alice_submission):
    with pytest.raises(Exception):
        GradingService.save_grade(alice_submission, 'q1', 99, actor_id=TA_ID)

    entry = AuditService.history('submission', alice_submission)[-1]
    assert entry.result == 'failed'
    assert entry.actor_id == TA_ID
    assert '99' in entry.error_msg


def test_get_logs_newest_first_with_filters(alice_submission):
    ClaimService.claim(alice_submission, TA_ID)
    ClaimService.claim(alice_submission, ADMIN_ID)

    page = AuditService.get_logs(per_page=2)
    assert [e.action for e in page.items] == ['claim', 'claim']
    assert page.items[0].id > page.items[1].id
    assert page.total == AuditLogEntry.query.count()

    mine = AuditService.get_logs(actor_id=TA_ID)
    assert [e.actor_id for e in mine.items] == [TA_ID]

    stats = AuditService.get_action_stats()
    assert dict(stats['action_stats'])['claim'] == 2
    assert stats['failed_logs'] == 0
