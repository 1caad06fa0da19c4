"""审计日志服务"""
import logging
from sqlalchemy import func
from gradehub.extensions import db
from gradehub.models.audit_log import AuditLogEntry
from gradehub.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class AuditService:
    """审计日志服务类"""

    @staticmethod
    def record(actor_id, action, entity_type=None, entity_id=None, detail=None):
        """
        记录一条成功操作的审计日志

        日志加入当前会话，与它所描述的修改在同一事务中提交，调用方负责commit。

        Args:
            actor_id: 操作者（助教）ID，系统操作为None
            action: 操作类型（import_submission, claim, status_change, save_grade等）
            entity_type: 实体类型（submission, grade, file等）
            entity_id: 实体ID
            detail: 结构化详情
        """
        entry = AuditLogEntry(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            detail=detail or {},
            result='success',
            created_at=utcnow()
        )
        db.session.add(entry)
        return entry

    @staticmethod
    def record_failure(actor_id, action, entity_type=None, entity_id=None, detail=None, error_msg=None):
        """
        记录一条被拒绝/失败操作的审计日志

        先回滚未提交的修改，再单独提交日志，保证失败的操作不留下部分写入。
        """
        db.session.rollback()
        try:
            db.session.add(AuditLogEntry(
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                detail=detail or {},
                result='failed',
                error_msg=error_msg,
                created_at=utcnow()
            ))
            db.session.commit()
        except Exception:
            # 记录失败日志本身出错不应掩盖原始错误
            logger.exception(f'[审计] 记录失败日志出错: action={action}, entity={entity_type}:{entity_id}')
            db.session.rollback()

    @staticmethod
    def get_logs(page=1, per_page=50, actor_id=None, action=None, entity_type=None, entity_id=None,
                 start_date=None, end_date=None):
        """
        获取日志列表（按序号倒序）

        Args:
            page: 页码
            per_page: 每页数量
            actor_id: 操作者过滤
            action: 操作类型过滤
            entity_type / entity_id: 实体过滤
            start_date / end_date: 时间范围
        """
        query = AuditLogEntry.query

        if actor_id:
            query = query.filter_by(actor_id=actor_id)
        if action:
            query = query.filter_by(action=action)
        if entity_type:
            query = query.filter_by(entity_type=entity_type)
        if entity_id is not None:
            query = query.filter_by(entity_id=str(entity_id))
        if start_date:
            query = query.filter(AuditLogEntry.created_at >= start_date)
        if end_date:
            query = query.filter(AuditLogEntry.created_at <= end_date)

        query = query.order_by(AuditLogEntry.id.desc())
        return query.paginate(page=page, per_page=per_page, error_out=False)

    @staticmethod
    def history(entity_type, entity_id):
        """某个实体的完整操作历史（按发生顺序）"""
        return AuditLogEntry.query.filter_by(
            entity_type=entity_type,
            entity_id=str(entity_id)
        ).order_by(AuditLogEntry.id.asc()).all()

    @staticmethod
    def get_action_stats():
        """获取操作统计信息"""
        return {
            'total_logs': AuditLogEntry.query.count(),
            'today_logs': AuditLogEntry.query.filter(
                func.date(AuditLogEntry.created_at) == utcnow().date()
            ).count(),
            'failed_logs': AuditLogEntry.query.filter_by(result='failed').count(),
            'action_stats': db.session.query(
                AuditLogEntry.action,
                func.count(AuditLogEntry.id)
            ).group_by(AuditLogEntry.action).all(),
            'actor_stats': db.session.query(
                AuditLogEntry.actor_id,
                func.count(AuditLogEntry.id)
            ).filter(
                AuditLogEntry.actor_id.isnot(None)
            ).group_by(AuditLogEntry.actor_id).order_by(
                func.count(AuditLogEntry.id).desc()
            ).limit(10).all()
        }
