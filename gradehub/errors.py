"""错误类型定义

服务层抛出，路由层不捕获，由应用工厂注册的错误处理器统一转换为JSON响应。
局部可恢复的错误（单个文件损坏、单个工作表解析失败）不会抛出到调用方，
而是记录在结果里。
"""


class GradeHubError(Exception):
    """所有业务错误的基类"""
    code = 'error'
    http_status = 400

    def __init__(self, message, **detail):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self):
        payload = {'success': False, 'code': self.code, 'message': self.message}
        if self.detail:
            payload['detail'] = self.detail
        return payload


class NotFound(GradeHubError):
    code = 'not_found'
    http_status = 404


class ScopeViolation(GradeHubError):
    """操作者不属于该课程"""
    code = 'scope_violation'
    http_status = 403


class ValidationError(GradeHubError):
    code = 'validation_error'
    http_status = 400


class RubricValidationError(ValidationError):
    code = 'invalid_rubric'


class DuplicateContent(GradeHubError):
    """同一作业下已导入过相同内容的压缩包（作为状态返回，不视为失败）"""
    code = 'duplicate'
    http_status = 200


class ExtractionFailure(GradeHubError):
    """压缩包无法读取"""
    code = 'extraction_failure'
    http_status = 422


class CorruptFile(GradeHubError):
    """压缩包内单个条目无法读取"""
    code = 'corrupt_file'
    http_status = 422


class NoMatch(GradeHubError):
    code = 'no_match'
    http_status = 200


class AmbiguousMatch(NoMatch):
    code = 'ambiguous_match'


class InvalidTransition(GradeHubError):
    code = 'invalid_transition'
    http_status = 409


class OutOfRangeScore(ValidationError):
    code = 'out_of_range_score'


class UnresolvedSubmission(GradeHubError):
    """提交尚未匹配到学生，不能评分"""
    code = 'unresolved_submission'
    http_status = 409


class FinalizedTotal(GradeHubError):
    code = 'finalized'
    http_status = 409


class WorkbookParseError(GradeHubError):
    """工作簿完全无法打开"""
    code = 'workbook_parse_error'
    http_status = 422


class PreviewUnavailable(GradeHubError):
    code = 'preview_unavailable'
    http_status = 503
