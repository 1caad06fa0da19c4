"""审计日志模型"""
from sqlalchemy import event
from gradehub.extensions import db
from gradehub.utils.helpers import utcnow, isoformat


class AuditLogEntry(db.Model):
    """审计日志表（只追加，不修改、不删除）"""
    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)  # 单调递增序号
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    actor_id = db.Column(db.Integer)  # 不设外键，助教被删除后日志仍保留
    action = db.Column(db.String(50), nullable=False, index=True)  # claim, status_change, save_grade等
    entity_type = db.Column(db.String(50))
    entity_id = db.Column(db.String(100))
    detail = db.Column(db.JSON)  # 结构化详情，足以还原决策过程
    result = db.Column(db.String(20), nullable=False, default='success')  # success, failed
    error_msg = db.Column(db.Text)

    __table_args__ = (
        db.Index('ix_audit_entity', 'entity_type', 'entity_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'created_at': isoformat(self.created_at),
            'actor_id': self.actor_id,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'detail': self.detail or {},
            'result': self.result,
            'error_msg': self.error_msg,
        }

    def __repr__(self):
        return f'<AuditLogEntry {self.id}: {self.actor_id} - {self.action}>'


class AuditLogImmutable(RuntimeError):
    """尝试修改或删除审计日志"""


@event.listens_for(AuditLogEntry, 'before_update')
def _reject_update(mapper, connection, target):
    raise AuditLogImmutable(f'审计日志不可修改: #{target.id}')


@event.listens_for(AuditLogEntry, 'before_delete')
def _reject_delete(mapper, connection, target):
    raise AuditLogImmutable(f'审计日志不可删除: #{target.id}')
