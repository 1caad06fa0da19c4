"""
测试共用夹具：临时目录中的SQLite数据库、种子数据（课程/助教/名册/作业），
以及构造压缩包和工作簿的辅助函数。
"""
import os
import zipfile

import pytest
from openpyxl import Workbook

from gradehub import create_app
from gradehub.extensions import db
from gradehub.models import Course, TA, CourseTA, CourseRole, Student, Assignment

ADMIN_ID = 1
TA_ID = 2
OUTSIDER_ID = 3
COURSE_ID = 1
ASSIGNMENT_ID = 1

ROSTER = [
    ('S10293', 'Alice Chen'),
    ('20231001', 'Bob Martinez'),
    ('20231002', 'Carol Zhang'),
    ('20231005', 'Dana Lee'),
    ('20231006', 'Dana Lee'),
]

RUBRIC = {
    'questions': [
        {
            'question_id': 'q1',
            'title': 'Formulas',
            'max_points': 10,
            'comment_presets': [{'label': 'missing-sum', 'text': 'Total is hardcoded', 'deduction': 2}],
            'checks': [{'type': 'range_must_have_formulas', 'sheet': 'Data', 'range': 'B2:B10'}],
        },
        {
            'question_id': 'q2',
            'title': 'Summary',
            'max_points': 5,
            'checks': [{'type': 'must_use_functions', 'sheet': 'Summary', 'functions': ['sum', 'average']}],
        },
    ]
}


@pytest.fixture
def app(tmp_path):
    storage = tmp_path / 'storage'
    app = create_app('testing', test_config={
        'STORAGE_DIR': str(storage),
        'SUBMISSION_CACHE_DIR': str(storage / 'cache'),
        'PREVIEW_DIR': str(storage / 'previews'),
        'IMPORT_ROOT': str(tmp_path),
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{storage / "data" / "test.db"}',
    })
    with app.app_context():
        db.create_all()
        seed()
        yield app
        db.session.remove()
        app.extensions['analysis_executor'].shutdown(wait=True)
        db.drop_all()


def seed():
    course = Course(id=COURSE_ID, name='Spreadsheet Modelling', term='2026秋')
    db.session.add(course)
    db.session.add_all([
        TA(id=ADMIN_ID, display_name='Admin TA', initials='AT', is_active=True),
        TA(id=TA_ID, display_name='Grader TA', initials='GT', is_active=True),
        TA(id=OUTSIDER_ID, display_name='Other Course TA', initials='OT', is_active=True),
    ])
    db.session.flush()
    db.session.add_all([
        CourseTA(course_id=COURSE_ID, ta_id=ADMIN_ID, role=CourseRole.ADMIN),
        CourseTA(course_id=COURSE_ID, ta_id=TA_ID, role=CourseRole.TA),
    ])
    for student_id, name in ROSTER:
        db.session.add(Student(course_id=COURSE_ID, student_id=student_id, name=name,
                               email=f'{student_id.lower()}@example.edu'))
    assignment = Assignment(id=ASSIGNMENT_ID, course_id=COURSE_ID, title='Homework 1')
    assignment.rubric = RUBRIC
    db.session.add(assignment)
    db.session.commit()


@pytest.fixture
def client(app):
    # app 夹具在整个测试期间保持应用上下文，测试请求会复用它（及其 g）；
    # 每个请求开始时清除 Flask-Login 缓存的用户，使其按请求头重新加载
    from flask import g, request_started

    def _reset_login_user(sender, **extra):
        g.pop('_login_user', None)

    request_started.connect(_reset_login_user, app)
    yield app.test_client()
    request_started.disconnect(_reset_login_user, app)


def headers(ta_id):
    return {'X-TA-Id': str(ta_id)}


def make_zip(path, files, compression=zipfile.ZIP_DEFLATED):
    """files: {条目名: bytes 或 str}"""
    with zipfile.ZipFile(path, 'w', compression=compression) as archive:
        for name, content in files.items():
            if isinstance(content, str):
                content = content.encode('utf-8')
            archive.writestr(name, content)
    return str(path)


def make_graded_workbook(path, creator=None):
    """
    两个可见工作表共12个公式，另有一个隐藏工作表：
    Data!B2:B10 中除 B5（硬编码42）外都是公式，Summary 有4个公式
    """
    wb = Workbook()
    data = wb.active
    data.title = 'Data'
    data['A1'] = 'Qty'
    data['B1'] = 'Total'
    for row in range(2, 11):
        data[f'A{row}'] = row - 1
        data[f'B{row}'] = 42 if row == 5 else f'=SUM(A{row},A{row})'
    data.row_dimensions[3].hidden = True
    data.column_dimensions['C'].hidden = True

    summary = wb.create_sheet('Summary')
    summary['A1'] = 'Grand total'
    summary['B1'] = '=SUM(Data!B2:B10)'
    summary['B2'] = '=AVERAGE(Data!A2:A10)'
    summary['B3'] = '=IF(B1>10,"big SUM(","small")'
    summary['B4'] = '=ROUND(_xlfn.STDEV.S(Data!A2:A10),2)'

    hidden = wb.create_sheet('Hidden')
    hidden['A1'] = 'answer key'
    hidden.sheet_state = 'hidden'

    if creator:
        wb.properties.creator = creator
    wb.save(path)
    return str(path)


def workbook_bytes(tmp_path, name='hw1.xlsx', creator=None):
    path = tmp_path / f'_build_{name}'
    make_graded_workbook(path, creator=creator)
    return path.read_bytes()


@pytest.fixture
def import_archive(app, tmp_path):
    """导入一个压缩包并返回结果字典"""
    from gradehub.services import IntakeService

    def _import(filename, files, actor_id=ADMIN_ID):
        path = make_zip(tmp_path / filename, files)
        return IntakeService.import_submissions(ASSIGNMENT_ID, [path], actor_id=actor_id)[0]
    return _import


@pytest.fixture
def alice_submission(import_archive, tmp_path):
    """已匹配到 Alice Chen (S10293) 的提交ID"""
    result = import_archive('S10293_hw1.zip', {
        'hw1.xlsx': workbook_bytes(tmp_path),
        'notes.txt': 'see workbook',
    })
    assert result['status'] == 'imported'
    return result['submission_id']


@pytest.fixture
def unmatched_submission(import_archive):
    result = import_archive('random_stuff.zip', {'readme.txt': 'hello there'})
    assert result['student_id'] is None
    return result['submission_id']


def file_path(app, *parts):
    return os.path.join(app.config['STORAGE_DIR'], *parts)
