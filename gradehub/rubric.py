"""评分细则（rubric）结构

细则在写入时校验为强类型的树：Rubric -> 有序的 Question -> 有序的 CommentPreset，
题目上可附带工作簿检查项 RangeCheck。数据库中以JSON文档存储。
"""
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from openpyxl.utils.cell import range_boundaries

from gradehub.errors import RubricValidationError


class CheckType:
    """工作簿检查类型"""
    MUST_HAVE_FORMULAS = 'range_must_have_formulas'
    NO_HARDCODED = 'range_no_hardcoded'
    MUST_USE_FUNCTIONS = 'must_use_functions'
    MUST_HAVE_PIVOT = 'must_have_pivot'
    MUST_HAVE_CHART = 'must_have_chart'

    ALL = (MUST_HAVE_FORMULAS, NO_HARDCODED, MUST_USE_FUNCTIONS, MUST_HAVE_PIVOT, MUST_HAVE_CHART)
    NEEDS_RANGE = (MUST_HAVE_FORMULAS, NO_HARDCODED)


@dataclass
class CommentPreset:
    label: str
    text: str = ''
    deduction: Optional[float] = None


@dataclass
class RangeCheck:
    type: str
    range: Optional[str] = None
    sheet: Optional[str] = None
    functions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise RubricValidationError('检查项必须是对象')
        check_type = data.get('type')
        if check_type not in CheckType.ALL:
            raise RubricValidationError(f'未知的检查类型: {check_type}')
        cell_range = data.get('range') or None
        if cell_range is not None and not isinstance(cell_range, str):
            raise RubricValidationError('单元格范围必须是字符串')
        cell_part = cell_range.rsplit('!', 1)[-1] if cell_range else ''
        if check_type in CheckType.NEEDS_RANGE and not cell_part:
            raise RubricValidationError(f'检查类型 {check_type} 需要指定单元格范围')
        if cell_part:
            try:
                range_boundaries(cell_part.replace('$', ''))
            except (TypeError, ValueError):
                raise RubricValidationError(f'单元格范围格式无效: {cell_range}')
        functions = [str(f).strip().upper() for f in data.get('functions') or [] if str(f).strip()]
        if check_type == CheckType.MUST_USE_FUNCTIONS and not functions:
            raise RubricValidationError('must_use_functions 至少需要一个函数名')
        return cls(type=check_type, range=cell_range, sheet=data.get('sheet') or None, functions=functions)


@dataclass
class Question:
    question_id: str
    title: str
    max_points: float
    description: Optional[str] = None
    comment_presets: List[CommentPreset] = field(default_factory=list)
    checks: List[RangeCheck] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise RubricValidationError('题目必须是对象')
        question_id = str(data.get('question_id') or '').strip()
        if not question_id:
            raise RubricValidationError('题目缺少 question_id')
        title = str(data.get('title') or '').strip()
        if not title:
            raise RubricValidationError(f'题目 {question_id} 缺少标题')
        try:
            max_points = float(data.get('max_points'))
        except (TypeError, ValueError):
            raise RubricValidationError(f'题目 {question_id} 的满分必须是数字')
        if max_points < 0:
            raise RubricValidationError(f'题目 {question_id} 的满分不能为负数')

        presets = []
        for raw in data.get('comment_presets') or []:
            if not isinstance(raw, dict) or not str(raw.get('label') or '').strip():
                raise RubricValidationError(f'题目 {question_id} 的评语预设缺少 label')
            deduction = raw.get('deduction')
            if deduction is not None:
                try:
                    deduction = float(deduction)
                except (TypeError, ValueError):
                    raise RubricValidationError(f'题目 {question_id} 的扣分必须是数字')
            presets.append(CommentPreset(label=str(raw['label']).strip(),
                                         text=raw.get('text') or '',
                                         deduction=deduction))

        # 兼容旧字段名 excel_checks
        raw_checks = data.get('checks')
        if raw_checks is None:
            raw_checks = data.get('excel_checks') or []
        checks = [RangeCheck.from_dict(c) for c in raw_checks]

        return cls(question_id=question_id, title=title, max_points=max_points,
                   description=data.get('description'), comment_presets=presets, checks=checks)

    def preset(self, label):
        for preset in self.comment_presets:
            if preset.label == label:
                return preset
        return None


@dataclass
class Rubric:
    questions: List[Question] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise RubricValidationError('评分细则必须是对象')
        questions = [Question.from_dict(q) for q in data.get('questions') or []]
        seen = set()
        for q in questions:
            if q.question_id in seen:
                raise RubricValidationError(f'题目ID重复: {q.question_id}')
            seen.add(q.question_id)
        return cls(questions=questions)

    def to_dict(self):
        return asdict(self)

    def question(self, question_id):
        for q in self.questions:
            if q.question_id == question_id:
                return q
        return None

    @property
    def max_total(self):
        return sum(q.max_points for q in self.questions)

    def all_checks(self):
        """按题目顺序展开全部工作簿检查项"""
        return [check for q in self.questions for check in q.checks]
