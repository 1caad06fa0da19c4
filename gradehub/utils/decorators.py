"""路由辅助装饰器"""
from functools import wraps
from flask import request, current_app
from flask_login import current_user

from gradehub.errors import ValidationError, ScopeViolation
from gradehub.models import CourseRole


def json_body(*required):
    """
    要求请求体为JSON对象，并包含指定字段

    解析后的对象作为关键字参数 payload 传给视图函数。
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            payload = request.get_json(silent=True)
            if payload is None:
                payload = {}
            if not isinstance(payload, dict):
                raise ValidationError('请求体必须是JSON对象')
            missing = [name for name in required if payload.get(name) in (None, '')]
            if missing:
                raise ValidationError(f'缺少必要字段: {", ".join(missing)}', fields=missing)
            return f(*args, payload=payload, **kwargs)
        return decorated_function
    return decorator


def require_course_admin(f):
    """要求当前助教至少在一门课程中是管理员"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not any(m.role == CourseRole.ADMIN for m in current_user.memberships):
            raise ScopeViolation('需要课程管理员权限', actor_id=current_user.id)
        return f(*args, **kwargs)
    return decorated_function


def pagination_args(max_per_page=200):
    page = max(1, request.args.get('page', 1, type=int))
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PER_PAGE'], type=int)
    return page, max(1, min(per_page, max_per_page))
