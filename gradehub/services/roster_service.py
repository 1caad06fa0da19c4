"""学生名册服务"""
import os
import logging

import pandas as pd

from gradehub.extensions import db
from gradehub.errors import NotFound, ValidationError
from gradehub.models import Course, Student
from gradehub.services.access import require_course_scope
from gradehub.services.audit_service import AuditService

logger = logging.getLogger(__name__)

# 名册列名（不区分大小写）到字段的映射
COLUMN_ALIASES = {
    'student_id': {'student_id', 'student id', 'id', 'sid', '学号'},
    'name': {'name', 'student name', 'full name', '姓名'},
    'email': {'email', 'e-mail', 'mail', '邮箱'},
    'section': {'section', 'class', '班级'},
}


def safe_str(value):
    """转换为字符串，空值与NaN返回空字符串"""
    if value is None or pd.isna(value):
        return ''
    if isinstance(value, float) and value.is_integer():
        # Excel把纯数字学号读成浮点数
        value = int(value)
    return str(value).strip()


class RosterService:
    """名册服务类"""

    @staticmethod
    def read_roster_file(path):
        """
        读取 csv/xlsx 名册文件

        Returns:
            list[dict]: 每行 {student_id, name, email, section, extra}
        """
        ext = os.path.splitext(path)[1].lower()
        try:
            if ext == '.csv':
                df = pd.read_csv(path, dtype=str, encoding='utf-8-sig')
            elif ext in ('.xlsx', '.xlsm'):
                df = pd.read_excel(path, engine='openpyxl', dtype=str)
            else:
                raise ValidationError(f'不支持的名册文件格式: {ext}')
        except (OSError, ValueError) as e:
            raise ValidationError(f'名册文件读取失败: {e}')

        if df.empty:
            raise ValidationError('名册文件为空')

        # 清理列名：去除前后空格和BOM标记
        df.columns = [str(c).replace('\ufeff', '').strip() for c in df.columns]
        mapping = {}
        for column in df.columns:
            for field, aliases in COLUMN_ALIASES.items():
                if column.lower() in aliases and field not in mapping:
                    mapping[field] = column
        missing = [f for f in ('student_id', 'name') if f not in mapping]
        if missing:
            raise ValidationError(f'名册缺少必要列: {", ".join(missing)}。当前列: {", ".join(df.columns)}')

        extra_columns = [c for c in df.columns if c not in mapping.values()]
        rows = []
        for record in df.to_dict('records'):
            rows.append({
                'student_id': safe_str(record[mapping['student_id']]),
                'name': safe_str(record[mapping['name']]),
                'email': safe_str(record[mapping['email']]) if 'email' in mapping else '',
                'section': safe_str(record[mapping['section']]) if 'section' in mapping else '',
                'extra': {c: safe_str(record[c]) for c in extra_columns if safe_str(record[c])},
            })
        logger.info(f'[名册] 读取 {os.path.basename(path)}: {len(rows)} 行')
        return rows

    @staticmethod
    def upsert_students(course_id, rows, actor_id=None):
        """
        按 (课程, 学号) 新增或更新学生

        Returns:
            dict: {created, updated, skipped, errors}
        """
        course = db.session.get(Course, course_id)
        if course is None:
            raise NotFound(f'课程不存在: {course_id}', course_id=course_id)
        if actor_id is not None:
            try:
                require_course_scope(actor_id, course_id)
            except Exception as e:
                AuditService.record_failure(actor_id, 'import_roster', 'course', course_id,
                                            {'rows': len(rows)}, getattr(e, 'message', str(e)))
                raise

        created = updated = skipped = 0
        errors = []
        seen = set()
        for index, row in enumerate(rows, start=1):
            student_id = safe_str(row.get('student_id'))
            name = safe_str(row.get('name'))
            if not student_id or not name:
                skipped += 1
                errors.append(f'第{index}行: 学号和姓名不能为空')
                continue
            if student_id in seen:
                skipped += 1
                errors.append(f'第{index}行: 学号 {student_id} 重复')
                continue
            seen.add(student_id)

            student = db.session.get(Student, (course_id, student_id))
            if student is None:
                student = Student(course_id=course_id, student_id=student_id)
                db.session.add(student)
                created += 1
            else:
                updated += 1
            student.name = name
            student.email = safe_str(row.get('email')) or None
            student.section = safe_str(row.get('section')) or None
            student.extra = row.get('extra') or {}

        result = {'created': created, 'updated': updated, 'skipped': skipped, 'errors': errors}
        AuditService.record(actor_id, 'import_roster', 'course', course_id,
                            {k: v for k, v in result.items() if k != 'errors'})
        db.session.commit()
        logger.info(f'[名册] 课程 {course_id}: 新增 {created}, 更新 {updated}, 跳过 {skipped}')
        return result
