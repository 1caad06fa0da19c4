"""成绩册导出服务"""
import os
import logging

import pandas as pd
from openpyxl.styles import Font, Alignment, PatternFill
from openpyxl.utils import get_column_letter

from gradehub.models import Student, Grade, GradeTotal
from gradehub.extensions import db
from gradehub.services.access import get_assignment, require_scope
from gradehub.services.audit_service import AuditService

logger = logging.getLogger(__name__)

SHEET_NAME = 'Gradebook'
FIXED_COLUMNS = ['Student ID', 'Name', 'Email', 'Total Score', 'Finalized']


def question_header(question):
    return f'{question.title} ({question.max_points:g} pts)'


class ExportService:
    """成绩册导出服务类"""

    @staticmethod
    def build_frame(assignment):
        """
        构建成绩册表格：名单中每个学生一行，每道题两列（分数、评语）

        总分取 GradeTotal（锁定的总分保持冻结值），没有记录的学生总分为0。
        """
        rubric = assignment.rubric
        students = Student.query.filter_by(course_id=assignment.course_id).order_by(
            Student.name, Student.student_id).all()
        grades = {(g.student_id, g.question_id): g
                  for g in Grade.query.filter_by(assignment_id=assignment.id).all()}
        totals = {t.student_id: t for t in GradeTotal.query.filter_by(assignment_id=assignment.id).all()}

        headers = list(FIXED_COLUMNS)
        for question in rubric.questions:
            headers.extend([question_header(question), 'Comments'])

        rows = []
        for student in students:
            total = totals.get(student.student_id)
            row = [student.student_id, student.name, student.email or '',
                   total.total_score if total else 0.0,
                   bool(total and total.finalized)]
            for question in rubric.questions:
                grade = grades.get((student.student_id, question.question_id))
                row.append(grade.score if grade and grade.score is not None else None)
                row.append(grade.comment if grade and grade.comment else '')
            rows.append(row)
        return pd.DataFrame(rows, columns=headers)

    @staticmethod
    def export_gradebook(assignment_id, output_path, actor_id=None):
        """导出成绩册到 xlsx 文件，返回输出路径"""
        assignment = get_assignment(assignment_id)
        if actor_id is not None:
            try:
                require_scope(actor_id, assignment)
            except Exception as e:
                AuditService.record_failure(actor_id, 'export_gradebook', 'assignment', assignment_id,
                                            {'output_path': output_path}, getattr(e, 'message', str(e)))
                raise

        df = ExportService.build_frame(assignment)
        directory = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(directory, exist_ok=True)

        with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
            worksheet = writer.sheets[SHEET_NAME]

            header_fill = PatternFill(start_color='4472C4', end_color='4472C4', fill_type='solid')
            header_font = Font(bold=True, color='FFFFFF', size=12)
            for cell in worksheet[1]:
                cell.fill = header_fill
                cell.font = header_font
                cell.alignment = Alignment(horizontal='center', vertical='center', wrap_text=True)

            for idx, name in enumerate(df.columns, start=1):
                width = 40 if name == 'Comments' else max(12, min(30, len(str(name)) + 4))
                worksheet.column_dimensions[get_column_letter(idx)].width = width

            for row in worksheet.iter_rows(min_row=2, max_row=worksheet.max_row):
                for cell in row:
                    if df.columns[cell.column - 1] == 'Comments':
                        cell.alignment = Alignment(horizontal='left', vertical='center', wrap_text=True)
                    else:
                        cell.alignment = Alignment(horizontal='center', vertical='center')

            worksheet.freeze_panes = 'B2'

        AuditService.record(actor_id, 'export_gradebook', 'assignment', assignment.id,
                            {'output_path': os.path.abspath(output_path), 'student_count': len(df)})
        db.session.commit()
        logger.info(f'[导出] 作业 {assignment.id}: 已导出 {len(df)} 名学生到 {output_path}')
        return output_path
