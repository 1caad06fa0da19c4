"""实体加载与课程范围检查"""
from gradehub.extensions import db
from gradehub.errors import NotFound, ScopeViolation
from gradehub.models import Assignment, Submission, SubmissionFile, TA, CourseTA, CourseRole


def get_assignment(assignment_id):
    assignment = db.session.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFound(f'作业不存在: {assignment_id}', assignment_id=assignment_id)
    return assignment


def get_submission(submission_id, for_update=False):
    """加载提交；for_update 时对该行加锁（按提交ID划分事务范围）"""
    query = Submission.query.filter_by(id=submission_id)
    if for_update:
        query = query.with_for_update()
    submission = query.first()
    if submission is None:
        raise NotFound(f'提交不存在: {submission_id}', submission_id=submission_id)
    return submission


def get_submission_file(submission_id, rel_path=None, file_id=None):
    """按相对路径或文件ID查找提交中的文件"""
    query = SubmissionFile.query.filter_by(submission_id=submission_id)
    if file_id is not None:
        query = query.filter_by(id=file_id)
    else:
        query = query.filter_by(rel_path=rel_path)
    submission_file = query.first()
    if submission_file is None:
        raise NotFound(f'提交 {submission_id} 中不存在文件: {rel_path or file_id}',
                       submission_id=submission_id, file_path=rel_path)
    return submission_file


def can_manage_assignment(actor_id, assignment, role=None):
    """检查操作者是否可以管理此作业（属于作业所在课程，且满足角色要求）"""
    if actor_id is None:
        return False
    membership = db.session.get(CourseTA, (assignment.course_id, actor_id))
    if membership is None:
        return False
    if role == CourseRole.ADMIN:
        return membership.role == CourseRole.ADMIN
    return True


def require_scope(actor_id, assignment, role=None):
    """不在课程范围内时抛出 ScopeViolation"""
    if not can_manage_assignment(actor_id, assignment, role=role):
        ta = db.session.get(TA, actor_id) if actor_id is not None else None
        who = ta.display_name if ta else actor_id
        raise ScopeViolation(f'操作者 {who} 无权操作课程 {assignment.course_id} 的作业',
                             actor_id=actor_id, course_id=assignment.course_id, required_role=role)


def require_course_scope(actor_id, course_id, role=None):
    """按课程ID检查操作范围"""
    membership = db.session.get(CourseTA, (course_id, actor_id)) if actor_id is not None else None
    if membership is None or (role == CourseRole.ADMIN and membership.role != CourseRole.ADMIN):
        raise ScopeViolation(f'操作者 {actor_id} 无权操作课程 {course_id}',
                             actor_id=actor_id, course_id=course_id, required_role=role)
