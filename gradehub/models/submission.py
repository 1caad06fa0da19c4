"""提交相关模型"""
import os
from gradehub.extensions import db
from gradehub.utils.helpers import utcnow, isoformat


class SubmissionStatus:
    """提交状态"""
    UNSTARTED = 'unstarted'
    IN_PROGRESS = 'in_progress'
    DONE = 'done'
    FLAGGED = 'flagged'
    ERROR = 'error'

    ALL = (UNSTARTED, IN_PROGRESS, DONE, FLAGGED, ERROR)


class MatchMethod:
    """学生匹配方式"""
    FILENAME = 'filename'
    METADATA = 'metadata'
    MANUAL = 'manual'
    NONE = 'none'


class FileCategory:
    """文件类别，导入时按扩展名确定一次，后续不再重新推断"""
    SPREADSHEET = 'spreadsheet'
    TEXT = 'text'
    PDF = 'pdf'
    IMAGE = 'image'
    DOCUMENT = 'document'
    OTHER = 'other'

    EXTENSIONS = {
        SPREADSHEET: {'xlsx', 'xlsm', 'xltx', 'xltm', 'xls', 'ods'},
        TEXT: {'txt', 'md', 'csv', 'tsv', 'json', 'xml', 'yaml', 'yml', 'ini', 'log',
               'py', 'java', 'c', 'h', 'cpp', 'hpp', 'cs', 'js', 'ts', 'html', 'css',
               'sql', 'r', 'm', 'sh', 'bat', 'ipynb', 'tex', 'rs', 'go', 'rb', 'php'},
        PDF: {'pdf'},
        IMAGE: {'png', 'jpg', 'jpeg', 'gif', 'bmp', 'tif', 'tiff', 'webp', 'svg'},
        DOCUMENT: {'doc', 'docx', 'odt', 'rtf', 'ppt', 'pptx', 'odp'},
    }

    MIME_TYPES = {
        'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        'xlsm': 'application/vnd.ms-excel.sheet.macroEnabled.12',
        'xls': 'application/vnd.ms-excel',
        'csv': 'text/csv',
        'pdf': 'application/pdf',
        'docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
        'doc': 'application/msword',
        'png': 'image/png',
        'jpg': 'image/jpeg',
        'jpeg': 'image/jpeg',
        'gif': 'image/gif',
        'json': 'application/json',
        'html': 'text/html',
    }

    @classmethod
    def classify(cls, filename):
        """根据扩展名返回文件类别"""
        ext = os.path.splitext(filename)[1].lower().lstrip('.')
        for category, extensions in cls.EXTENSIONS.items():
            if ext in extensions:
                return category
        return cls.OTHER

    @classmethod
    def mime_type(cls, filename):
        ext = os.path.splitext(filename)[1].lower().lstrip('.')
        if ext in cls.MIME_TYPES:
            return cls.MIME_TYPES[ext]
        if cls.classify(filename) == cls.TEXT:
            return 'text/plain'
        return 'application/octet-stream'


class Submission(db.Model):
    """学生提交（一个压缩包），student_id 在匹配之前为空"""
    __tablename__ = 'submission'

    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(db.Integer, db.ForeignKey('assignment.id', ondelete='CASCADE'), nullable=False)
    student_id = db.Column(db.String(50))
    source_archive_path = db.Column(db.String(1000), nullable=False)
    original_filename = db.Column(db.String(255), nullable=False)
    content_hash = db.Column(db.String(64), nullable=False)
    cache_dir = db.Column(db.String(1000))
    received_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # 匹配信息
    match_confidence = db.Column(db.Float, nullable=False, default=0.0)
    match_method = db.Column(db.String(20), nullable=False, default=MatchMethod.NONE)

    # 状态与认领
    status = db.Column(db.String(20), nullable=False, default=SubmissionStatus.UNSTARTED)
    claimed_by_ta_id = db.Column(db.Integer, db.ForeignKey('ta.id', ondelete='SET NULL'))
    claimed_at = db.Column(db.DateTime)
    last_opened_at = db.Column(db.DateTime)
    notes = db.Column(db.Text)

    # 关系
    files = db.relationship('SubmissionFile', backref='submission', cascade='all, delete-orphan',
                            passive_deletes=True, order_by='SubmissionFile.rel_path')
    claimant = db.relationship('TA', foreign_keys=[claimed_by_ta_id])

    __table_args__ = (
        db.UniqueConstraint('assignment_id', 'content_hash', name='unique_assignment_content_hash'),
    )

    @property
    def is_unmatched(self):
        return self.student_id is None

    def to_dict(self):
        return {
            'id': self.id,
            'assignment_id': self.assignment_id,
            'student_id': self.student_id,
            'original_filename': self.original_filename,
            'content_hash': self.content_hash,
            'received_at': isoformat(self.received_at),
            'match_confidence': self.match_confidence,
            'match_method': self.match_method,
            'status': self.status,
            'claimed_by_ta_id': self.claimed_by_ta_id,
            'claimed_at': isoformat(self.claimed_at),
            'last_opened_at': isoformat(self.last_opened_at),
            'notes': self.notes,
        }

    def __repr__(self):
        return f'<Submission {self.id} {self.original_filename} - Assignment {self.assignment_id}>'


class SubmissionFile(db.Model):
    """压缩包内解出的单个文件"""
    __tablename__ = 'submission_file'

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(db.Integer, db.ForeignKey('submission.id', ondelete='CASCADE'), nullable=False)
    rel_path = db.Column(db.String(1000), nullable=False)
    abs_cache_path = db.Column(db.String(1000))
    file_type = db.Column(db.String(20), nullable=False, default=FileCategory.OTHER)
    mime_type = db.Column(db.String(100))
    size_bytes = db.Column(db.Integer, nullable=False, default=0)
    sha256 = db.Column(db.String(64))
    is_corrupt = db.Column(db.Boolean, nullable=False, default=False)
    corrupt_reason = db.Column(db.String(500))
    detected_encoding = db.Column(db.String(30))
    created_at = db.Column(db.DateTime, default=utcnow)

    analysis = db.relationship('FormulaAnalysis', backref='file', uselist=False,
                               cascade='all, delete-orphan', passive_deletes=True)

    @property
    def is_spreadsheet(self):
        return self.file_type == FileCategory.SPREADSHEET

    def to_dict(self):
        return {
            'id': self.id,
            'submission_id': self.submission_id,
            'rel_path': self.rel_path,
            'file_type': self.file_type,
            'mime_type': self.mime_type,
            'size_bytes': self.size_bytes,
            'sha256': self.sha256,
            'is_corrupt': self.is_corrupt,
            'corrupt_reason': self.corrupt_reason,
            'detected_encoding': self.detected_encoding,
        }

    def __repr__(self):
        return f'<SubmissionFile {self.rel_path}>'
