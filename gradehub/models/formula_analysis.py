"""工作簿分析结果模型"""
from gradehub.extensions import db
from gradehub.utils.helpers import utcnow, isoformat


class FormulaAnalysis(db.Model):
    """每个电子表格文件一条分析记录，重新分析时整体替换"""
    __tablename__ = 'formula_analysis'

    id = db.Column(db.Integer, primary_key=True)
    submission_file_id = db.Column(db.Integer, db.ForeignKey('submission_file.id', ondelete='CASCADE'),
                                   nullable=False, unique=True)
    content_hash = db.Column(db.String(64), nullable=False)  # 缓存键：(文件ID, 内容哈希)
    sheet_names = db.Column(db.JSON)
    used_range = db.Column(db.JSON)  # {工作表: 'A1:D20'}
    formula_cell_count = db.Column(db.Integer, nullable=False, default=0)
    has_pivot = db.Column(db.Boolean, nullable=False, default=False)
    has_charts = db.Column(db.Boolean, nullable=False, default=False)
    hidden_sheets = db.Column(db.JSON)
    hidden_rows_cols = db.Column(db.JSON)  # {工作表: {'rows': [...], 'columns': [...]}}
    formula_map = db.Column(db.JSON)  # 完整的公式映射
    range_check_results = db.Column(db.JSON)
    is_partial = db.Column(db.Boolean, nullable=False, default=False)
    analyzed_at = db.Column(db.DateTime, default=utcnow)

    def to_summary(self):
        return {
            'file_id': self.submission_file_id,
            'content_hash': self.content_hash,
            'sheets': self.sheet_names or [],
            'formula_cell_count': self.formula_cell_count,
            'has_pivot': self.has_pivot,
            'has_charts': self.has_charts,
            'hidden_sheets': self.hidden_sheets or [],
            'is_partial': self.is_partial,
            'analyzed_at': isoformat(self.analyzed_at),
        }

    def __repr__(self):
        return f'<FormulaAnalysis file={self.submission_file_id}>'
