"""作业与评分细则服务"""
import logging
from sqlalchemy import func
from gradehub.extensions import db
from gradehub.errors import RubricValidationError
from gradehub.models import Grade
from gradehub.rubric import Rubric
from gradehub.services.access import get_assignment, require_scope
from gradehub.services.audit_service import AuditService

logger = logging.getLogger(__name__)


class AssignmentService:
    """作业服务类"""

    @staticmethod
    def update_rubric(assignment_id, payload, actor_id):
        """
        校验并替换作业的评分细则

        已有评分的题目不能被删除，满分也不能低于该题已有的最高分。
        """
        assignment = get_assignment(assignment_id)
        try:
            require_scope(actor_id, assignment)
            rubric = payload if isinstance(payload, Rubric) else Rubric.from_dict(payload)
            highest = dict(db.session.query(Grade.question_id, func.max(Grade.score)).filter(
                Grade.assignment_id == assignment.id, Grade.score.isnot(None)).group_by(Grade.question_id))
            removed = set(highest) - {q.question_id for q in rubric.questions}
            if removed:
                raise RubricValidationError(f'已有评分的题目不能删除: {", ".join(sorted(removed))}',
                                            question_ids=sorted(removed))
            too_low = sorted(q.question_id for q in rubric.questions
                             if q.question_id in highest and highest[q.question_id] > q.max_points)
            if too_low:
                raise RubricValidationError(f'满分低于已有分数: {", ".join(too_low)}', question_ids=too_low)
        except Exception as e:
            AuditService.record_failure(actor_id, 'update_rubric', 'assignment', assignment_id, {},
                                        getattr(e, 'message', str(e)))
            raise

        previous = assignment.rubric
        assignment.rubric = rubric
        AuditService.record(actor_id, 'update_rubric', 'assignment', assignment.id, {
            'question_count': len(rubric.questions),
            'max_total': rubric.max_total,
            'previous_question_count': len(previous.questions),
        })
        db.session.commit()
        logger.info(f'[细则] 作业 {assignment.id}: 评分细则已更新，共 {len(rubric.questions)} 题')
        return rubric
