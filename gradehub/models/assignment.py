"""作业与评分相关模型"""
from gradehub.extensions import db
from gradehub.rubric import Rubric
from gradehub.utils.helpers import utcnow, isoformat


class Assignment(db.Model):
    """作业模型"""
    __tablename__ = 'assignment'

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id', ondelete='CASCADE'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    due_date = db.Column(db.DateTime)
    rubric_json = db.Column(db.JSON)  # 已校验的评分细则文档
    created_at = db.Column(db.DateTime, default=utcnow)

    # 关系
    submissions = db.relationship('Submission', backref='assignment', cascade='all, delete-orphan',
                                  passive_deletes=True)
    grades = db.relationship('Grade', backref='assignment', cascade='all, delete-orphan',
                             passive_deletes=True)
    grade_totals = db.relationship('GradeTotal', backref='assignment', cascade='all, delete-orphan',
                                   passive_deletes=True)

    @property
    def rubric(self):
        """评分细则（强类型）"""
        return Rubric.from_dict(self.rubric_json)

    @rubric.setter
    def rubric(self, value):
        if not isinstance(value, Rubric):
            value = Rubric.from_dict(value)
        self.rubric_json = value.to_dict()

    def to_dict(self):
        return {
            'id': self.id,
            'course_id': self.course_id,
            'title': self.title,
            'due_date': isoformat(self.due_date),
            'rubric': self.rubric_json or {'questions': []},
        }

    def __repr__(self):
        return f'<Assignment {self.title}>'


class Grade(db.Model):
    """单题评分，以 (assignment_id, student_id, question_id) 为主键，编辑即覆盖"""
    __tablename__ = 'grade'

    assignment_id = db.Column(db.Integer, db.ForeignKey('assignment.id', ondelete='CASCADE'), primary_key=True)
    student_id = db.Column(db.String(50), primary_key=True)
    question_id = db.Column(db.String(50), primary_key=True)
    score = db.Column(db.Float)
    comment = db.Column(db.Text)
    rubric_selections = db.Column(db.JSON)  # 选中的评语预设
    updated_by_ta_id = db.Column(db.Integer, db.ForeignKey('ta.id'))
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    editor = db.relationship('TA', foreign_keys=[updated_by_ta_id])

    def to_dict(self):
        return {
            'assignment_id': self.assignment_id,
            'student_id': self.student_id,
            'question_id': self.question_id,
            'score': self.score,
            'comment': self.comment,
            'rubric_selections': self.rubric_selections or [],
            'updated_by_ta_id': self.updated_by_ta_id,
            'updated_at': isoformat(self.updated_at),
        }


class GradeTotal(db.Model):
    """学生作业总分（未锁定时等于各题分数之和）"""
    __tablename__ = 'grade_total'

    assignment_id = db.Column(db.Integer, db.ForeignKey('assignment.id', ondelete='CASCADE'), primary_key=True)
    student_id = db.Column(db.String(50), primary_key=True)
    total_score = db.Column(db.Float, nullable=False, default=0.0)
    finalized = db.Column(db.Boolean, nullable=False, default=False)
    finalized_by_ta_id = db.Column(db.Integer, db.ForeignKey('ta.id'))
    finalized_at = db.Column(db.DateTime)

    finalizer = db.relationship('TA', foreign_keys=[finalized_by_ta_id])

    def to_dict(self):
        return {
            'assignment_id': self.assignment_id,
            'student_id': self.student_id,
            'total_score': self.total_score,
            'finalized': self.finalized,
            'finalized_by_ta_id': self.finalized_by_ta_id,
            'finalized_at': isoformat(self.finalized_at),
        }
