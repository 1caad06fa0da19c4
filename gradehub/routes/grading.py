"""评分、锁定、细则与成绩册导出路由"""
import os
from flask import Blueprint, jsonify, current_app, send_file, request
from flask_login import login_required, current_user

from gradehub.errors import ValidationError
from gradehub.services import GradingService
from gradehub.services.access import get_submission, get_assignment, require_scope
from gradehub.services.assignment_service import AssignmentService
from gradehub.services.export_service import ExportService
from gradehub.utils.decorators import json_body
from gradehub.utils.helpers import safe_filename, utcnow

bp = Blueprint('grading', __name__, url_prefix='/api')


def _total_dict(total):
    return total.to_dict() if total is not None else None


@bp.route('/submissions/<int:submission_id>/grades')
@login_required
def get_grades(submission_id):
    submission = get_submission(submission_id)
    require_scope(current_user.id, submission.assignment)
    grades = GradingService.get_grades(submission_id)
    total = None
    if submission.student_id is not None:
        total = GradingService.get_total(submission.assignment_id, submission.student_id)
    return jsonify({'success': True, 'grades': [g.to_dict() for g in grades], 'total': _total_dict(total)})


@bp.route('/submissions/<int:submission_id>/grades', methods=['POST'])
@login_required
@json_body('question_id')
def save_grade(submission_id, payload):
    """保存单题评分：{question_id, score, comment, rubric_selections}"""
    grade = GradingService.save_grade(
        submission_id,
        str(payload['question_id']),
        score=payload.get('score'),
        comment=payload.get('comment'),
        actor_id=current_user.id,
        rubric_selections=payload.get('rubric_selections'),
    )
    total = GradingService.get_total(grade.assignment_id, grade.student_id)
    return jsonify({'success': True, 'grade': grade.to_dict(), 'total': _total_dict(total)})


@bp.route('/assignments/<int:assignment_id>/students/<student_id>/finalize', methods=['POST'])
@login_required
def finalize(assignment_id, student_id):
    total = GradingService.finalize(assignment_id, student_id, current_user.id)
    return jsonify({'success': True, 'total': _total_dict(total)})


@bp.route('/assignments/<int:assignment_id>/students/<student_id>/finalize', methods=['DELETE'])
@login_required
def unfinalize(assignment_id, student_id):
    total = GradingService.unfinalize(assignment_id, student_id, current_user.id)
    return jsonify({'success': True, 'total': _total_dict(total)})


@bp.route('/assignments/<int:assignment_id>/export', methods=['POST'])
@login_required
def export_gradebook(assignment_id):
    """导出成绩册；?download=1 时直接返回文件"""
    assignment = get_assignment(assignment_id)
    filename = safe_filename(f'{assignment.title}_成绩册_{utcnow():%Y%m%d%H%M%S}.xlsx')
    output_path = os.path.join(current_app.config['STORAGE_DIR'], 'exports', str(assignment_id), filename)
    ExportService.export_gradebook(assignment_id, output_path, actor_id=current_user.id)
    if request.args.get('download'):
        return send_file(output_path, as_attachment=True, download_name=filename)
    return jsonify({'success': True, 'path': output_path})


@bp.route('/assignments/<int:assignment_id>/rubric', methods=['PUT'])
@login_required
def update_rubric(assignment_id):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError('评分细则必须是JSON对象')
    rubric = AssignmentService.update_rubric(assignment_id, payload, current_user.id)
    return jsonify({'success': True, 'rubric': rubric.to_dict(), 'max_total': rubric.max_total})
