"""提交导入、匹配、认领与名册导入相关路由"""
import os
import uuid
from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from werkzeug.utils import secure_filename

from gradehub.errors import ValidationError
from gradehub.models import Submission, SubmissionStatus
from gradehub.services import IntakeService, IdentityService, ClaimService, FileService
from gradehub.services.roster_service import RosterService
from gradehub.services.access import get_assignment, get_submission, require_scope
from gradehub.utils.decorators import json_body
from gradehub.utils.helpers import safe_filename

bp = Blueprint('submissions', __name__, url_prefix='/api')


def _save_uploads(assignment_id, files):
    """保存上传的压缩包，每个文件单独一个目录以保留原始文件名（文件名参与学生匹配）"""
    paths = []
    upload_root = os.path.join(current_app.config['STORAGE_DIR'], 'uploads', str(assignment_id))
    for file in files:
        if not file or not file.filename:
            continue
        directory = os.path.join(upload_root, uuid.uuid4().hex)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, safe_filename(os.path.basename(file.filename)))
        file.save(path)
        paths.append(path)
    return paths


@bp.route('/assignments/<int:assignment_id>/import', methods=['POST'])
@login_required
def import_submissions(assignment_id):
    """批量导入：multipart 上传 archives，或JSON {paths: [...]} 指定 IMPORT_ROOT 下的服务器路径"""
    if request.files:
        paths = _save_uploads(assignment_id, request.files.getlist('archives'))
    else:
        payload = request.get_json(silent=True) or {}
        paths = payload.get('paths') or []
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ValidationError('paths 必须是路径字符串列表')
        import_root = os.path.realpath(current_app.config['IMPORT_ROOT'])
        outside = [p for p in paths if not FileService.validate_file_path(os.path.realpath(p), import_root)]
        if outside:
            raise ValidationError('路径不在允许的导入目录内', paths=outside)
    if not paths:
        raise ValidationError('没有需要导入的文件')

    results = IntakeService.import_submissions(assignment_id, paths, actor_id=current_user.id)
    current_app.logger.info(f'[导入] 助教 {current_user.id} 向作业 {assignment_id} 导入 {len(paths)} 个文件')
    return jsonify({'success': True, 'results': results})


@bp.route('/assignments/<int:assignment_id>/unmatched')
@login_required
def unmatched(assignment_id):
    """待人工匹配的提交（按接收时间先后）"""
    assignment = get_assignment(assignment_id)
    require_scope(current_user.id, assignment)
    submissions = IdentityService.list_unmatched(assignment_id)
    return jsonify({'success': True, 'submissions': [s.to_dict() for s in submissions]})


@bp.route('/assignments/<int:assignment_id>/submissions')
@login_required
def list_submissions(assignment_id):
    """
    作业的提交列表，可按状态、学生、认领人过滤

    默认是待批改队列，不含已隔离（flagged）的提交；include_flagged=1 或 status=flagged 时才返回。
    """
    assignment = get_assignment(assignment_id)
    require_scope(current_user.id, assignment)

    query = Submission.query.filter_by(assignment_id=assignment_id)
    status = request.args.get('status')
    if status:
        if status not in SubmissionStatus.ALL:
            raise ValidationError(f'未知的状态: {status}')
        query = query.filter_by(status=status)
    elif request.args.get('include_flagged', type=int) != 1:
        query = query.filter(Submission.status != SubmissionStatus.FLAGGED)
    student_id = request.args.get('student_id')
    if student_id:
        query = query.filter_by(student_id=student_id)
    claimed_by = request.args.get('claimed_by', type=int)
    if claimed_by:
        query = query.filter_by(claimed_by_ta_id=claimed_by)

    submissions = query.order_by(Submission.received_at.asc(), Submission.id.asc()).all()
    return jsonify({'success': True, 'submissions': [s.to_dict() for s in submissions]})


@bp.route('/assignments/<int:assignment_id>/resume')
@login_required
def resume(assignment_id):
    """会话恢复：当前助教最近打开的进行中提交"""
    assignment = get_assignment(assignment_id)
    require_scope(current_user.id, assignment)
    submission = ClaimService.resume_point(current_user.id, assignment_id)
    return jsonify({'success': True, 'submission': submission.to_dict() if submission else None})


@bp.route('/submissions/<int:submission_id>')
@login_required
def detail(submission_id):
    """提交详情（含文件列表）"""
    submission = get_submission(submission_id)
    require_scope(current_user.id, submission.assignment)
    data = submission.to_dict()
    data['files'] = [f.to_dict() for f in submission.files]
    return jsonify({'success': True, 'submission': data})


@bp.route('/submissions/<int:submission_id>', methods=['DELETE'])
@login_required
def delete(submission_id):
    IntakeService.delete_submission(submission_id, current_user.id)
    return jsonify({'success': True})


@bp.route('/submissions/<int:submission_id>/match', methods=['POST'])
@login_required
@json_body('student_id')
def manual_match(submission_id, payload):
    submission = IdentityService.manual_match(submission_id, str(payload['student_id']).strip(), current_user.id)
    return jsonify({'success': True, 'submission': submission.to_dict()})


@bp.route('/submissions/<int:submission_id>/quarantine', methods=['POST'])
@login_required
@json_body('reason')
def quarantine(submission_id, payload):
    submission = IdentityService.quarantine(submission_id, payload['reason'], current_user.id)
    return jsonify({'success': True, 'submission': submission.to_dict()})


@bp.route('/submissions/<int:submission_id>/claim', methods=['POST'])
@login_required
def claim(submission_id):
    previous = get_submission(submission_id).claimed_by_ta_id
    submission = ClaimService.claim(submission_id, current_user.id)
    takeover = previous is not None and previous != current_user.id
    return jsonify({'success': True, 'submission': submission.to_dict(),
                    'previous_claimant': previous, 'takeover': takeover})


@bp.route('/submissions/<int:submission_id>/release', methods=['POST'])
@login_required
def release(submission_id):
    submission = ClaimService.release(submission_id, current_user.id)
    return jsonify({'success': True, 'submission': submission.to_dict()})


@bp.route('/submissions/<int:submission_id>/touch', methods=['POST'])
@login_required
def touch(submission_id):
    submission = ClaimService.touch(submission_id, current_user.id)
    return jsonify({'success': True, 'last_opened_at': submission.to_dict()['last_opened_at']})


@bp.route('/submissions/<int:submission_id>/status', methods=['POST'])
@login_required
@json_body('status')
def update_status(submission_id, payload):
    submission = ClaimService.update_status(submission_id, payload['status'], current_user.id)
    return jsonify({'success': True, 'submission': submission.to_dict()})


@bp.route('/courses/<int:course_id>/roster', methods=['POST'])
@login_required
def import_roster(course_id):
    """上传 csv/xlsx 名册（字段 file），按学号新增或更新学生"""
    file = request.files.get('file')
    if not file or not file.filename:
        raise ValidationError('请上传名册文件')
    ext = os.path.splitext(file.filename)[1].lower()
    filename = secure_filename(file.filename)
    if not filename or not filename.lower().endswith(ext):
        filename = f'roster{ext}'
    directory = os.path.join(current_app.config['STORAGE_DIR'], 'rosters', str(course_id), uuid.uuid4().hex)
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, filename)
    file.save(path)

    rows = RosterService.read_roster_file(path)
    result = RosterService.upsert_students(course_id, rows, actor_id=current_user.id)
    current_app.logger.info(f'[名册] 助教 {current_user.id} 向课程 {course_id} 导入名册 {file.filename}')
    return jsonify({'success': True, **result})
