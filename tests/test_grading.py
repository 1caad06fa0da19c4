"""评分与总分锁定测试"""
import pytest

from gradehub.extensions import db
from gradehub.errors import (
    NotFound, OutOfRangeScore, UnresolvedSubmission, ScopeViolation, ValidationError,
    RubricValidationError, FinalizedTotal
)
from gradehub.models import Assignment, Grade, GradeTotal, AuditLogEntry
from gradehub.rubric import Rubric, CheckType
from gradehub.services import GradingService
from gradehub.services.assignment_service import AssignmentService

from conftest import ADMIN_ID, TA_ID, OUTSIDER_ID, ASSIGNMENT_ID, RUBRIC

ALICE = 'S10293'


def _total():
    return db.session.get(GradeTotal, (ASSIGNMENT_ID, ALICE))


def _sum_of_grades():
    return sum(g.score or 0 for g in Grade.query.filter_by(assignment_id=ASSIGNMENT_ID, student_id=ALICE))


def test_total_tracks_sum_of_question_scores(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 7.5, actor_id=TA_ID)
    assert _total().total_score == 7.5

    GradingService.save_grade(alice_submission, 'q2', 4, comment='good', actor_id=TA_ID)
    assert _total().total_score == 11.5
    assert _total().total_score == _sum_of_grades()
    assert not _total().finalized


def test_save_grade_overwrites(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 3, actor_id=TA_ID)
    grade = GradingService.save_grade(alice_submission, 'q1', 9, comment='regraded', actor_id=ADMIN_ID)

    assert Grade.query.count() == 1
    assert grade.score == 9
    assert grade.updated_by_ta_id == ADMIN_ID
    assert _total().total_score == 9
    entry = AuditLogEntry.query.filter_by(action='save_grade').order_by(AuditLogEntry.id.desc()).first()
    assert entry.detail['previous_score'] == 3
    assert entry.detail['total_score'] == 9


def test_empty_score_counts_as_zero(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 6, actor_id=TA_ID)
    grade = GradingService.save_grade(alice_submission, 'q1', None, comment='pending', actor_id=TA_ID)

    assert grade.score is None
    assert _total().total_score == 0


def test_boundary_scores_are_accepted(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 0, actor_id=TA_ID)
    GradingService.save_grade(alice_submission, 'q2', 5, actor_id=TA_ID)
    assert _total().total_score == 5


@pytest.mark.parametrize('score', [10.5, -1, 'NaN'])
def test_out_of_range_score_is_rejected_without_write(alice_submission, score):
    GradingService.save_grade(alice_submission, 'q1', 4, actor_id=TA_ID)

    with pytest.raises(OutOfRangeScore):
        GradingService.save_grade(alice_submission, 'q1', score, actor_id=TA_ID)

    assert db.session.get(Grade, (ASSIGNMENT_ID, ALICE, 'q1')).score == 4
    assert _total().total_score == 4
    failed = AuditLogEntry.query.filter_by(action='save_grade', result='failed').one()
    assert failed.detail['question_id'] == 'q1'


def test_non_numeric_score_is_rejected(alice_submission):
    with pytest.raises(ValidationError):
        GradingService.save_grade(alice_submission, 'q1', 'ten', actor_id=TA_ID)
    assert Grade.query.count() == 0


def test_unknown_question(alice_submission):
    with pytest.raises(NotFound):
        GradingService.save_grade(alice_submission, 'q9', 1, actor_id=TA_ID)
    assert Grade.query.count() == 0


def test_unresolved_submission_cannot_be_graded(unmatched_submission):
    with pytest.raises(UnresolvedSubmission):
        GradingService.save_grade(unmatched_submission, 'q1', 1, actor_id=TA_ID)
    assert GradingService.get_grades(unmatched_submission) == []


def test_outsider_cannot_grade(alice_submission):
    with pytest.raises(ScopeViolation):
        GradingService.save_grade(alice_submission, 'q1', 1, actor_id=OUTSIDER_ID)
    assert Grade.query.count() == 0


def test_comment_presets_are_validated(alice_submission):
    grade = GradingService.save_grade(alice_submission, 'q1', 8, actor_id=TA_ID,
                                      rubric_selections=['missing-sum'])
    assert grade.rubric_selections == [{'label': 'missing-sum', 'deduction': 2.0}]

    with pytest.raises(ValidationError):
        GradingService.save_grade(alice_submission, 'q1', 8, actor_id=TA_ID, rubric_selections=['no-such-preset'])


def test_finalize_freezes_total(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 6, actor_id=TA_ID)
    total = GradingService.finalize(ASSIGNMENT_ID, ALICE, TA_ID)

    assert total.finalized
    assert total.finalized_by_ta_id == TA_ID
    assert total.finalized_at is not None

    # 锁定后单题分数仍可修改，但总分不变
    GradingService.save_grade(alice_submission, 'q2', 5, actor_id=TA_ID)
    assert db.session.get(Grade, (ASSIGNMENT_ID, ALICE, 'q2')).score == 5
    assert _total().total_score == 6


def test_finalize_twice_is_rejected(alice_submission):
    GradingService.finalize(ASSIGNMENT_ID, ALICE, TA_ID)
    with pytest.raises(FinalizedTotal):
        GradingService.finalize(ASSIGNMENT_ID, ALICE, ADMIN_ID)
    assert _total().finalized_by_ta_id == TA_ID


def test_unfinalize_requires_admin(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 6, actor_id=TA_ID)
    GradingService.finalize(ASSIGNMENT_ID, ALICE, TA_ID)

    with pytest.raises(ScopeViolation):
        GradingService.unfinalize(ASSIGNMENT_ID, ALICE, TA_ID)
    assert _total().finalized


def test_unfinalize_recomputes_total(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 6, actor_id=TA_ID)
    GradingService.finalize(ASSIGNMENT_ID, ALICE, TA_ID)
    GradingService.save_grade(alice_submission, 'q2', 3, actor_id=TA_ID)

    total = GradingService.unfinalize(ASSIGNMENT_ID, ALICE, ADMIN_ID)

    assert not total.finalized
    assert total.finalized_by_ta_id is None
    assert total.total_score == 9 == _sum_of_grades()
    entry = AuditLogEntry.query.filter_by(action='unfinalize').one()
    assert entry.detail['frozen_total'] == 6


def test_unfinalize_without_total(app):
    with pytest.raises(NotFound):
        GradingService.unfinalize(ASSIGNMENT_ID, ALICE, ADMIN_ID)


def test_finalize_unknown_student_is_rejected(app):
    with pytest.raises(NotFound):
        GradingService.finalize(ASSIGNMENT_ID, 'NO_SUCH_STUDENT', TA_ID)

    assert db.session.get(GradeTotal, (ASSIGNMENT_ID, 'NO_SUCH_STUDENT')) is None
    failed = AuditLogEntry.query.filter_by(action='finalize', result='failed').one()
    assert 'NO_SUCH_STUDENT' in failed.error_msg


def test_unfinalize_unknown_student_is_rejected(app):
    with pytest.raises(NotFound):
        GradingService.unfinalize(ASSIGNMENT_ID, 'NO_SUCH_STUDENT', ADMIN_ID)


def test_rubric_round_trip_keeps_checks():
    rubric = Rubric.from_dict(RUBRIC)
    q1 = rubric.question('q1')
    assert rubric.max_total == 15
    assert q1.checks[0].type == CheckType.MUST_HAVE_FORMULAS
    assert q1.preset('missing-sum').deduction == 2
    assert rubric.question('q2').checks[0].functions == ['SUM', 'AVERAGE']
    assert Rubric.from_dict(rubric.to_dict()) == rubric


@pytest.mark.parametrize('payload', [
    {'questions': [{'question_id': 'q1', 'title': 'A', 'max_points': 'ten'}]},
    {'questions': [{'question_id': 'q1', 'title': 'A', 'max_points': -1}]},
    {'questions': [{'question_id': 'q1', 'title': 'A', 'max_points': 1},
                   {'question_id': 'q1', 'title': 'B', 'max_points': 1}]},
    {'questions': [{'question_id': 'q1', 'title': 'A', 'max_points': 1,
                    'checks': [{'type': 'range_must_have_formulas'}]}]},
    {'questions': [{'question_id': 'q1', 'title': 'A', 'max_points': 1, 'checks': [{'type': 'sparkles'}]}]},
    {'questions': [{'question_id': 'q1', 'title': 'A', 'max_points': 1,
                    'checks': [{'type': 'range_must_have_formulas', 'range': 'Data!'}]}]},
    {'questions': [{'question_id': 'q1', 'title': 'A', 'max_points': 1,
                    'checks': [{'type': 'range_no_hardcoded', 'range': 'B2:nowhere'}]}]},
])
def test_invalid_rubric_is_rejected(payload):
    with pytest.raises(RubricValidationError):
        Rubric.from_dict(payload)


def test_update_rubric(app):
    payload = {'questions': RUBRIC['questions'] + [{'question_id': 'q3', 'title': 'Chart', 'max_points': 5,
                                                    'checks': [{'type': 'must_have_chart'}]}]}
    rubric = AssignmentService.update_rubric(ASSIGNMENT_ID, payload, ADMIN_ID)

    assert [q.question_id for q in rubric.questions] == ['q1', 'q2', 'q3']
    assert db.session.get(Assignment, ASSIGNMENT_ID).rubric.max_total == 20
    entry = AuditLogEntry.query.filter_by(action='update_rubric').one()
    assert entry.detail['previous_question_count'] == 2


def test_graded_question_cannot_be_removed(alice_submission):
    GradingService.save_grade(alice_submission, 'q2', 3, actor_id=TA_ID)

    with pytest.raises(RubricValidationError):
        AssignmentService.update_rubric(ASSIGNMENT_ID, {'questions': RUBRIC['questions'][:1]}, ADMIN_ID)
    assert db.session.get(Assignment, ASSIGNMENT_ID).rubric.question('q2') is not None


def test_max_points_cannot_drop_below_saved_score(alice_submission):
    GradingService.save_grade(alice_submission, 'q1', 9, actor_id=TA_ID)
    questions = [dict(RUBRIC['questions'][0], max_points=2), RUBRIC['questions'][1]]

    with pytest.raises(RubricValidationError):
        AssignmentService.update_rubric(ASSIGNMENT_ID, {'questions': questions}, ADMIN_ID)
    assert db.session.get(Assignment, ASSIGNMENT_ID).rubric.question('q1').max_points == 10

    questions[0]['max_points'] = 9
    rubric = AssignmentService.update_rubric(ASSIGNMENT_ID, {'questions': questions}, ADMIN_ID)
    assert rubric.question('q1').max_points == 9
