"""评分服务

Grade 按 (作业, 学生, 题目) 存储，编辑即覆盖；GradeTotal 在未锁定时始终等于各题分数之和，
每次写入单题分数后立即重算并校验，锁定（finalize）后总分冻结直到管理员解除锁定。
"""
import logging
from sqlalchemy import func
from gradehub.extensions import db
from gradehub.errors import (
    NotFound, OutOfRangeScore, UnresolvedSubmission, ValidationError, GradeHubError, FinalizedTotal
)
from gradehub.models import Grade, GradeTotal, CourseRole, Student
from gradehub.services.access import get_submission, get_assignment, require_scope
from gradehub.services.audit_service import AuditService
from gradehub.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class GradeTotalMismatch(GradeHubError):
    """总分与单题分数之和不一致"""
    code = 'grade_total_mismatch'
    http_status = 500


class GradingService:
    """评分服务类"""

    @staticmethod
    def get_grades(submission_id):
        """获取提交对应学生的全部单题评分"""
        submission = get_submission(submission_id)
        if submission.student_id is None:
            return []
        return Grade.query.filter_by(
            assignment_id=submission.assignment_id,
            student_id=submission.student_id
        ).order_by(Grade.question_id).all()

    @staticmethod
    def get_total(assignment_id, student_id):
        return db.session.get(GradeTotal, (assignment_id, student_id))

    @staticmethod
    def _score_sum(assignment_id, student_id):
        total = db.session.query(func.coalesce(func.sum(Grade.score), 0.0)).filter(
            Grade.assignment_id == assignment_id,
            Grade.student_id == student_id
        ).scalar()
        return float(total or 0.0)

    @staticmethod
    def _validate_score(question, score):
        if score is None:
            return None
        try:
            score = float(score)
        except (TypeError, ValueError):
            raise ValidationError(f'分数必须是数字: {score}', question_id=question.question_id)
        if score != score or score < 0 or score > question.max_points:
            raise OutOfRangeScore(
                f'题目 {question.question_id} 的分数必须在 0-{question.max_points:g} 之间，收到 {score:g}',
                question_id=question.question_id, score=score, max_points=question.max_points)
        return score

    @staticmethod
    def _validate_selections(question, selections):
        """评语预设选择：必须是该题已定义的预设标签"""
        if not selections:
            return []
        labels = []
        for item in selections:
            label = item.get('label') if isinstance(item, dict) else item
            preset = question.preset(label)
            if preset is None:
                raise ValidationError(f'题目 {question.question_id} 不存在评语预设: {label}',
                                      question_id=question.question_id)
            labels.append({'label': preset.label, 'deduction': preset.deduction})
        return labels

    @staticmethod
    def recompute_total(assignment_id, student_id):
        """重算总分（已锁定则不变），返回 GradeTotal"""
        total = db.session.get(GradeTotal, (assignment_id, student_id))
        if total is None:
            total = GradeTotal(assignment_id=assignment_id, student_id=student_id, total_score=0.0,
                               finalized=False)
            db.session.add(total)
        if not total.finalized:
            db.session.flush()
            total.total_score = GradingService._score_sum(assignment_id, student_id)
        return total

    @staticmethod
    def verify_total(assignment_id, student_id):
        """校验未锁定总分等于单题分数之和"""
        db.session.flush()
        total = db.session.get(GradeTotal, (assignment_id, student_id))
        if total is None or total.finalized:
            return True
        expected = GradingService._score_sum(assignment_id, student_id)
        if abs(total.total_score - expected) > 1e-9:
            raise GradeTotalMismatch(f'总分 {total.total_score} 与单题分数之和 {expected} 不一致',
                                     assignment_id=assignment_id, student_id=student_id)
        return True

    @staticmethod
    def save_grade(submission_id, question_id, score=None, comment=None, actor_id=None, rubric_selections=None):
        """
        保存单题评分（覆盖写入）

        分数为空或在 [0, 满分] 之间，超出范围直接拒绝（不截断），拒绝时不做任何写入。
        """
        submission = get_submission(submission_id)
        detail = {'question_id': question_id, 'score': score, 'student_id': submission.student_id,
                  'assignment_id': submission.assignment_id}
        try:
            assignment = submission.assignment
            require_scope(actor_id, assignment)
            if submission.student_id is None:
                raise UnresolvedSubmission('提交尚未匹配学生，不能评分', submission_id=submission_id)
            question = assignment.rubric.question(question_id)
            if question is None:
                raise NotFound(f'评分细则中不存在题目: {question_id}', question_id=question_id)
            score = GradingService._validate_score(question, score)
            selections = GradingService._validate_selections(question, rubric_selections)
        except Exception as e:
            AuditService.record_failure(actor_id, 'save_grade', 'submission', submission_id, detail,
                                        getattr(e, 'message', str(e)))
            raise

        key = (submission.assignment_id, submission.student_id, question_id)
        grade = db.session.get(Grade, key)
        previous = grade.score if grade else None
        if grade is None:
            grade = Grade(assignment_id=key[0], student_id=key[1], question_id=key[2])
            db.session.add(grade)
        grade.score = score
        grade.comment = comment
        grade.rubric_selections = selections
        grade.updated_by_ta_id = actor_id
        grade.updated_at = utcnow()

        total = GradingService.recompute_total(key[0], key[1])
        GradingService.verify_total(key[0], key[1])

        detail.update({'previous_score': previous, 'total_score': total.total_score,
                       'finalized': total.finalized})
        AuditService.record(actor_id, 'save_grade', 'submission', submission.id, detail)
        db.session.commit()
        logger.info(f'[评分] 作业={key[0]}, 学生={key[1]}, 题目={question_id}, 分数={score}, '
                    f'总分={total.total_score}{"（已锁定）" if total.finalized else ""}')
        return grade

    @staticmethod
    def require_student(assignment, student_id):
        """学号必须在作业所属课程的名册中"""
        if not student_id or db.session.get(Student, (assignment.course_id, student_id)) is None:
            raise NotFound(f'课程名册中不存在学生 {student_id}', student_id=student_id)

    @staticmethod
    def finalize(assignment_id, student_id, actor_id):
        """锁定总分，记录锁定人和时间；已锁定的总分需先由管理员解除锁定"""
        assignment = get_assignment(assignment_id)
        entity_id = f'{assignment_id}:{student_id}'
        detail = {'student_id': student_id}
        try:
            require_scope(actor_id, assignment)
            GradingService.require_student(assignment, student_id)
            existing = db.session.get(GradeTotal, (assignment_id, student_id))
            if existing is not None and existing.finalized:
                raise FinalizedTotal(f'学生 {student_id} 的总分已锁定', student_id=student_id,
                                     finalized_by=existing.finalized_by_ta_id)
        except Exception as e:
            AuditService.record_failure(actor_id, 'finalize', 'grade_total', entity_id,
                                        detail, getattr(e, 'message', str(e)))
            raise

        total = GradingService.recompute_total(assignment_id, student_id)
        total.finalized = True
        total.finalized_by_ta_id = actor_id
        total.finalized_at = utcnow()
        detail['total_score'] = total.total_score
        AuditService.record(actor_id, 'finalize', 'grade_total', entity_id, detail)
        db.session.commit()
        logger.info(f'[锁定] 作业={assignment_id}, 学生={student_id}, 总分={total.total_score} (助教 {actor_id})')
        return total

    @staticmethod
    def unfinalize(assignment_id, student_id, actor_id):
        """管理员解除锁定，总分立即按单题分数重算"""
        assignment = get_assignment(assignment_id)
        entity_id = f'{assignment_id}:{student_id}'
        try:
            require_scope(actor_id, assignment, role=CourseRole.ADMIN)
            GradingService.require_student(assignment, student_id)
            total = db.session.get(GradeTotal, (assignment_id, student_id))
            if total is None:
                raise NotFound(f'学生 {student_id} 尚无总分记录', student_id=student_id)
        except Exception as e:
            AuditService.record_failure(actor_id, 'unfinalize', 'grade_total', entity_id,
                                        {'student_id': student_id}, getattr(e, 'message', str(e)))
            raise

        frozen = total.total_score
        total.finalized = False
        total.finalized_by_ta_id = None
        total.finalized_at = None
        GradingService.recompute_total(assignment_id, student_id)
        GradingService.verify_total(assignment_id, student_id)
        AuditService.record(actor_id, 'unfinalize', 'grade_total', entity_id,
                            {'student_id': student_id, 'frozen_total': frozen, 'total_score': total.total_score})
        db.session.commit()
        return total
