"""审计日志路由"""
from datetime import datetime, timedelta
from flask import Blueprint, request, jsonify
from flask_login import login_required

from gradehub.errors import ValidationError
from gradehub.services import AuditService
from gradehub.utils.decorators import require_course_admin, pagination_args

bp = Blueprint('logs', __name__, url_prefix='/api/logs')


def _parse_date(value, name):
    if not value:
        return None
    try:
        return datetime.strptime(value, '%Y-%m-%d')
    except ValueError:
        raise ValidationError(f'{name} 日期格式应为 YYYY-MM-DD: {value}')


@bp.route('/')
@login_required
@require_course_admin
def index():
    """日志列表（按序号倒序）- 仅课程管理员可访问"""
    page, per_page = pagination_args()
    start_date = _parse_date(request.args.get('start_date'), 'start_date')
    end_date = _parse_date(request.args.get('end_date'), 'end_date')
    if end_date:
        end_date = end_date + timedelta(days=1)  # 包含当天

    pagination = AuditService.get_logs(
        page=page,
        per_page=per_page,
        actor_id=request.args.get('actor_id', type=int),
        action=request.args.get('action'),
        entity_type=request.args.get('entity_type'),
        entity_id=request.args.get('entity_id'),
        start_date=start_date,
        end_date=end_date,
    )
    return jsonify({
        'success': True,
        'logs': [entry.to_dict() for entry in pagination.items],
        'page': pagination.page,
        'pages': pagination.pages,
        'total': pagination.total,
    })


@bp.route('/stats')
@login_required
@require_course_admin
def stats():
    data = AuditService.get_action_stats()
    return jsonify({
        'success': True,
        'total_logs': data['total_logs'],
        'today_logs': data['today_logs'],
        'failed_logs': data['failed_logs'],
        'action_stats': {action: count for action, count in data['action_stats']},
        'actor_stats': [{'actor_id': actor_id, 'count': count} for actor_id, count in data['actor_stats']],
    })


@bp.route('/<entity_type>/<entity_id>')
@login_required
@require_course_admin
def history(entity_type, entity_id):
    """某个实体的完整操作历史"""
    entries = AuditService.history(entity_type, entity_id)
    return jsonify({'success': True, 'logs': [entry.to_dict() for entry in entries]})
