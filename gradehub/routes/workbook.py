"""工作簿分析路由"""
from flask import Blueprint, jsonify, request, send_file
from flask_login import login_required, current_user

from gradehub.services import AnalysisService
from gradehub.services.analysis_service import AnalysisKind
from gradehub.services.access import get_submission, require_scope
from gradehub.utils.decorators import json_body

bp = Blueprint('workbook', __name__, url_prefix='/api')


def _wants_async():
    return request.args.get('async', '').lower() in ('1', 'true', 'yes')


def _prepare(submission_id, rel_path):
    """范围检查并定位文件"""
    require_scope(current_user.id, get_submission(submission_id).assignment)
    return AnalysisService.resolve_file(submission_id, rel_path)


def _submit(submission_file, kind, checks=None):
    task = AnalysisService.submit(submission_file.id, kind, checks=checks, actor_id=current_user.id)
    return jsonify({'success': True, 'task_id': task.task_id, 'status': task.status}), 202


@bp.route('/submissions/<int:submission_id>/workbook/analyze', methods=['POST'])
@login_required
@json_body('path')
def analyze(submission_id, payload):
    """工作簿概览：{path}"""
    submission_file = _prepare(submission_id, payload['path'])
    if _wants_async():
        return _submit(submission_file, AnalysisKind.SUMMARY)
    return jsonify({'success': True, 'summary': AnalysisService.analyze_file(submission_file.id)})


@bp.route('/submissions/<int:submission_id>/workbook/formula-map', methods=['POST'])
@login_required
@json_body('path')
def formula_map(submission_id, payload):
    """完整公式映射：{path}；?async=1 时返回任务ID"""
    submission_file = _prepare(submission_id, payload['path'])
    if _wants_async():
        return _submit(submission_file, AnalysisKind.FORMULA_MAP)
    result = AnalysisService.formula_map_for_file(submission_file.id, actor_id=current_user.id)
    return jsonify({'success': True, 'formula_map': result})


@bp.route('/submissions/<int:submission_id>/workbook/checks', methods=['POST'])
@login_required
@json_body('path')
def run_checks(submission_id, payload):
    """执行检查项：{path, checks}；不传 checks 时使用评分细则中的检查项"""
    submission_file = _prepare(submission_id, payload['path'])
    checks = payload.get('checks')
    if checks is not None:
        checks = AnalysisService.parse_checks(checks)
    if _wants_async():
        return _submit(submission_file, AnalysisKind.CHECKS, checks=checks)
    results = AnalysisService.run_checks_for_file(submission_file.id, checks=checks, actor_id=current_user.id)
    return jsonify({'success': True, 'results': results})


@bp.route('/submissions/<int:submission_id>/workbook/preview', methods=['POST'])
@login_required
@json_body('path')
def preview(submission_id, payload):
    """生成PDF预览并返回文件"""
    require_scope(current_user.id, get_submission(submission_id).assignment)
    target = AnalysisService.render_preview(submission_id, payload['path'])
    return send_file(target, mimetype='application/pdf')


@bp.route('/analysis/tasks/<task_id>')
@login_required
def task_status(task_id):
    task = AnalysisService.get_task(task_id)
    return jsonify({'success': True, 'task': task.to_dict(include_result=task.finished)})
