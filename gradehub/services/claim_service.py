"""认领与状态管理服务

认领是建议性的：其他助教认领同一提交时直接覆盖，不阻塞，覆盖事件写入审计日志，
用于事后核对"谁在什么时候动过什么"。
"""
import logging
from gradehub.extensions import db
from gradehub.errors import InvalidTransition
from gradehub.models import Submission, SubmissionStatus
from gradehub.services.access import get_submission, get_assignment, require_scope
from gradehub.services.audit_service import AuditService
from gradehub.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# 允许的状态迁移（flagged/error 可从任意状态进入，done/flagged 可重新进入 in_progress）
ALLOWED_TRANSITIONS = {
    SubmissionStatus.UNSTARTED: {SubmissionStatus.IN_PROGRESS, SubmissionStatus.FLAGGED, SubmissionStatus.ERROR},
    SubmissionStatus.IN_PROGRESS: {SubmissionStatus.DONE, SubmissionStatus.FLAGGED, SubmissionStatus.ERROR},
    SubmissionStatus.DONE: {SubmissionStatus.IN_PROGRESS, SubmissionStatus.FLAGGED, SubmissionStatus.ERROR},
    SubmissionStatus.FLAGGED: {SubmissionStatus.IN_PROGRESS, SubmissionStatus.ERROR},
    SubmissionStatus.ERROR: {SubmissionStatus.FLAGGED},
}

# 认领时重新进入 in_progress 的状态；error 只能先转为 flagged
REENTRY_ON_CLAIM = {SubmissionStatus.UNSTARTED, SubmissionStatus.DONE, SubmissionStatus.FLAGGED}


def is_allowed(old_status, new_status):
    if new_status not in SubmissionStatus.ALL:
        return False
    if old_status == new_status:
        return True
    return new_status in ALLOWED_TRANSITIONS.get(old_status, set())


class ClaimService:
    """认领服务类"""

    @staticmethod
    def apply_transition(submission, new_status):
        """校验并修改状态（不提交事务），返回原状态"""
        old_status = submission.status
        if not is_allowed(old_status, new_status):
            raise InvalidTransition(f'不允许的状态变更: {old_status} -> {new_status}',
                                    submission_id=submission.id, old_status=old_status, new_status=new_status)
        submission.status = new_status
        return old_status

    @staticmethod
    def claim(submission_id, actor_id):
        """认领提交；unstarted、done、flagged 的提交回到 in_progress；每次认领都刷新最后打开时间"""
        submission = get_submission(submission_id, for_update=True)
        try:
            require_scope(actor_id, submission.assignment)
        except Exception as e:
            AuditService.record_failure(actor_id, 'claim', 'submission', submission_id, {}, getattr(e, 'message', str(e)))
            raise

        now = utcnow()
        previous = submission.claimed_by_ta_id
        if previous != actor_id:
            submission.claimed_by_ta_id = actor_id
            submission.claimed_at = now
        submission.last_opened_at = now

        old_status = submission.status
        if old_status in REENTRY_ON_CLAIM:
            ClaimService.apply_transition(submission, SubmissionStatus.IN_PROGRESS)

        detail = {'previous_claimant': previous, 'takeover': previous is not None and previous != actor_id,
                  'old_status': old_status, 'new_status': submission.status}
        AuditService.record(actor_id, 'claim', 'submission', submission.id, detail)
        db.session.commit()

        if detail['takeover']:
            logger.warning(f'[认领] 提交 {submission.id} 已被助教 {previous} 认领，现由助教 {actor_id} 覆盖')
        return submission

    @staticmethod
    def release(submission_id, actor_id):
        """释放认领"""
        submission = get_submission(submission_id, for_update=True)
        try:
            require_scope(actor_id, submission.assignment)
        except Exception as e:
            AuditService.record_failure(actor_id, 'release', 'submission', submission_id, {}, getattr(e, 'message', str(e)))
            raise

        previous = submission.claimed_by_ta_id
        submission.claimed_by_ta_id = None
        submission.claimed_at = None
        AuditService.record(actor_id, 'release', 'submission', submission.id,
                            {'previous_claimant': previous, 'own_claim': previous == actor_id})
        db.session.commit()
        return submission

    @staticmethod
    def touch(submission_id, actor_id):
        """只刷新最后打开时间，用于会话恢复"""
        submission = get_submission(submission_id, for_update=True)
        try:
            require_scope(actor_id, submission.assignment)
        except Exception as e:
            AuditService.record_failure(actor_id, 'touch', 'submission', submission_id, {}, getattr(e, 'message', str(e)))
            raise

        submission.last_opened_at = utcnow()
        AuditService.record(actor_id, 'touch', 'submission', submission.id, {})
        db.session.commit()
        return submission

    @staticmethod
    def update_status(submission_id, new_status, actor_id):
        """修改提交状态，非法迁移被拒绝且原状态不变"""
        submission = get_submission(submission_id, for_update=True)
        old_status = submission.status
        detail = {'old_status': old_status, 'new_status': new_status}
        try:
            require_scope(actor_id, submission.assignment)
            ClaimService.apply_transition(submission, new_status)
        except Exception as e:
            AuditService.record_failure(actor_id, 'status_change', 'submission', submission_id, detail,
                                        getattr(e, 'message', str(e)))
            raise

        AuditService.record(actor_id, 'status_change', 'submission', submission.id, detail)
        db.session.commit()
        logger.info(f'[状态] 提交 {submission.id}: {old_status} -> {new_status} (助教 {actor_id})')
        return submission

    @staticmethod
    def resume_point(actor_id, assignment_id):
        """会话恢复：该助教最近打开的、仍在进行中的已认领提交"""
        get_assignment(assignment_id)
        return Submission.query.filter_by(
            assignment_id=assignment_id,
            claimed_by_ta_id=actor_id,
            status=SubmissionStatus.IN_PROGRESS
        ).order_by(Submission.last_opened_at.desc()).first()
