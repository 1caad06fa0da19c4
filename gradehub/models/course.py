"""课程、助教与学生名册模型"""
from flask_login import UserMixin
from gradehub.extensions import db
from gradehub.utils.helpers import utcnow


class CourseRole:
    """课程内角色"""
    ADMIN = 'admin'
    TA = 'ta'


class Course(db.Model):
    """课程模型"""
    __tablename__ = 'course'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    term = db.Column(db.String(50), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    # 关系（删除课程时级联删除名册与作业）
    students = db.relationship('Student', backref='course', cascade='all, delete-orphan',
                               passive_deletes=True)
    assignments = db.relationship('Assignment', backref='course', cascade='all, delete-orphan',
                                  passive_deletes=True)
    memberships = db.relationship('CourseTA', backref='course', cascade='all, delete-orphan',
                                  passive_deletes=True)

    def __repr__(self):
        return f'<Course {self.name} ({self.term})>'


class TA(UserMixin, db.Model):
    """助教（操作者）模型"""
    __tablename__ = 'ta'

    id = db.Column(db.Integer, primary_key=True)
    display_name = db.Column(db.String(100), nullable=False)
    initials = db.Column(db.String(10), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    memberships = db.relationship('CourseTA', backref='ta', cascade='all, delete-orphan',
                                  passive_deletes=True)

    def role_in(self, course_id):
        """获取助教在某课程中的角色，不属于该课程返回None"""
        for membership in self.memberships:
            if membership.course_id == course_id:
                return membership.role
        return None

    def to_dict(self):
        return {'id': self.id, 'display_name': self.display_name, 'initials': self.initials}

    def __repr__(self):
        return f'<TA {self.display_name}>'


class CourseTA(db.Model):
    """课程-助教关联"""
    __tablename__ = 'course_ta'

    course_id = db.Column(db.Integer, db.ForeignKey('course.id', ondelete='CASCADE'), primary_key=True)
    ta_id = db.Column(db.Integer, db.ForeignKey('ta.id', ondelete='CASCADE'), primary_key=True)
    role = db.Column(db.String(20), nullable=False, default=CourseRole.TA)


class Student(db.Model):
    """学生名册，以 (course_id, student_id) 为复合主键"""
    __tablename__ = 'student'

    course_id = db.Column(db.Integer, db.ForeignKey('course.id', ondelete='CASCADE'), primary_key=True)
    student_id = db.Column(db.String(50), primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200))
    section = db.Column(db.String(50))
    extra = db.Column(db.JSON)  # 名册中的其他列

    def to_dict(self):
        return {
            'course_id': self.course_id,
            'student_id': self.student_id,
            'name': self.name,
            'email': self.email,
            'section': self.section,
            'extra': self.extra or {},
        }

    def __repr__(self):
        return f'<Student {self.student_id} {self.name}>'
