"""数据模型包"""
from gradehub.models.course import Course, TA, CourseTA, CourseRole, Student
from gradehub.models.assignment import Assignment, Grade, GradeTotal
from gradehub.models.submission import (
    Submission, SubmissionFile, SubmissionStatus, MatchMethod, FileCategory
)
from gradehub.models.audit_log import AuditLogEntry, AuditLogImmutable
from gradehub.models.formula_analysis import FormulaAnalysis

__all__ = [
    'Course', 'TA', 'CourseTA', 'CourseRole', 'Student',
    'Assignment', 'Grade', 'GradeTotal',
    'Submission', 'SubmissionFile', 'SubmissionStatus', 'MatchMethod', 'FileCategory',
    'AuditLogEntry', 'AuditLogImmutable',
    'FormulaAnalysis',
]
