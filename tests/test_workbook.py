"""工作簿分析与检查项测试"""
import pytest
from openpyxl import load_workbook
from openpyxl.chart import BarChart, Reference

from gradehub.extensions import db
from gradehub.errors import WorkbookParseError, PreviewUnavailable, ValidationError, NotFound, RubricValidationError
from gradehub.models import FormulaAnalysis, AuditLogEntry
from gradehub.rubric import RangeCheck, CheckType
from gradehub.services import AnalysisService
from gradehub.services import workbook_service
from gradehub.services.workbook_service import WorkbookLimits, extract_functions, is_constant_formula
from gradehub.utils.task_registry import TaskStatus

from conftest import TA_ID, make_graded_workbook


@pytest.fixture
def workbook(tmp_path):
    return make_graded_workbook(tmp_path / 'graded.xlsx')


@pytest.fixture
def formula_map(workbook):
    return workbook_service.extract_formula_map(workbook)


def _sheet(formula_map, name):
    return next(s for s in formula_map['sheets'] if s['name'] == name)


def _check(formula_map, **data):
    return workbook_service.evaluate_check(RangeCheck.from_dict(data), formula_map)


@pytest.mark.parametrize('formula, expected', [
    ('=SUM(A1:A3)', {'SUM'}),
    ('=IF(B1>10,"big SUM(","small")', {'IF'}),
    ('=ROUND(_xlfn.STDEV.S(A1:A9),2)', {'ROUND', 'STDEV.S'}),
    ("='Sales Data (2026)'!B2*2", set()),
    ('=vlookup(A2,Table1,2,FALSE)', {'VLOOKUP'}),
    ('=A1+B1', set()),
])
def test_extract_functions(formula, expected):
    assert extract_functions(formula) == expected


def test_constant_formula_detection():
    assert is_constant_formula('=100*1.05')
    assert not is_constant_formula('=A1*1.05')
    assert not is_constant_formula('=PI()')


def test_summarize_counts_formulas(workbook):
    summary = workbook_service.summarize(workbook)

    assert summary['sheets'] == ['Data', 'Summary', 'Hidden']
    assert summary['formula_cell_count'] == 12
    assert not summary['is_partial']
    states = {s['name']: s['state'] for s in summary['sheet_details']}
    assert states['Hidden'] == 'hidden'


def test_formula_map_structure(formula_map):
    assert formula_map['sheet_names'] == ['Data', 'Summary', 'Hidden']
    assert formula_map['total_formula_count'] == 12
    assert formula_map['hidden_sheets'] == ['Hidden']
    assert not formula_map['is_partial']
    assert not formula_map['has_pivot']
    assert not formula_map['has_charts']
    assert formula_map['used_range']['Data'] == 'A1:B10'

    data = _sheet(formula_map, 'Data')
    assert data['formula_count'] == 8
    assert data['functions_used'] == ['SUM']
    assert 'B5' in data['constant_cells']
    assert {'cell': 'B2', 'formula': '=SUM(A2,A2)', 'value': None} in data['formulas']
    assert formula_map['hidden_rows_cols']['Data'] == {'rows': [3], 'columns': ['C']}

    summary = _sheet(formula_map, 'Summary')
    assert summary['functions_used'] == ['AVERAGE', 'IF', 'ROUND', 'STDEV.S', 'SUM']
    assert 'Summary' not in formula_map['hidden_rows_cols']


def test_must_have_formulas_names_hardcoded_cell(formula_map):
    result = _check(formula_map, type='range_must_have_formulas', sheet='Data', range='B2:B10')

    assert result['passed'] is False
    assert result['sheet'] == 'Data'
    assert 'B5' in result['detail']
    assert '硬编码' in result['detail']


def test_must_have_formulas_passes_on_full_range(formula_map):
    result = _check(formula_map, type='range_must_have_formulas', range='Data!B6:B10')
    assert result['passed'] is True
    assert result['sheet'] == 'Data'


def test_range_defaults_to_first_visible_sheet(formula_map):
    result = _check(formula_map, type='range_must_have_formulas', range='B2:B4')
    assert result['sheet'] == 'Data'
    assert result['passed'] is True


def test_no_hardcoded(formula_map):
    failing = _check(formula_map, type='range_no_hardcoded', sheet='Data', range='B2:B10')
    passing = _check(formula_map, type='range_no_hardcoded', sheet='Summary', range='B1:B4')

    assert failing['passed'] is False
    assert 'B5' in failing['detail']
    assert passing['passed'] is True


def test_function_checks(formula_map):
    assert _check(formula_map, type='must_use_functions', sheet='Summary', functions=['sum', 'stdev.s'])['passed']
    assert _check(formula_map, type='must_use_functions', functions=['AVERAGE'])['passed']

    result = _check(formula_map, type='must_use_functions', sheet='Data', functions=['SUM', 'VLOOKUP'])
    assert result['passed'] is False
    assert 'VLOOKUP' in result['detail']
    assert 'SUM,' not in result['detail']


def test_check_on_missing_sheet_fails(formula_map):
    result = _check(formula_map, type='range_must_have_formulas', sheet='Nope', range='A1:A2')
    assert result['passed'] is False
    assert 'Nope' in result['detail']


@pytest.mark.parametrize('data', [
    {'type': 'range_must_have_formulas', 'range': 'Data!'},
    {'type': 'range_no_hardcoded', 'sheet': 'Data', 'range': 'Data'},
    {'type': 'must_use_functions', 'range': 'B2..B9', 'functions': ['SUM']},
    {'type': 'range_must_have_formulas', 'range': 42},
])
def test_malformed_range_is_rejected_when_parsed(data):
    with pytest.raises(RubricValidationError):
        RangeCheck.from_dict(data)


def test_sheet_only_range_fails_without_crashing(formula_map):
    check = RangeCheck(type=CheckType.MUST_HAVE_FORMULAS, range='Data!')
    result = workbook_service.evaluate_check(check, formula_map)
    assert result['passed'] is False
    assert '范围无效' in result['detail']


def test_chart_and_pivot_checks(tmp_path):
    path = make_graded_workbook(tmp_path / 'chart.xlsx')
    wb = load_workbook(path)
    ws = wb['Data']
    chart = BarChart()
    chart.add_data(Reference(ws, min_col=1, min_row=1, max_row=10), titles_from_data=True)
    ws.add_chart(chart, 'E2')
    wb.save(path)

    formula_map = workbook_service.extract_formula_map(path)
    assert formula_map['has_charts']
    assert _sheet(formula_map, 'Data')['chart_count'] == 1
    assert _check(formula_map, type='must_have_chart')['passed']
    assert _check(formula_map, type='must_have_chart', sheet='Data')['passed']
    assert not _check(formula_map, type='must_have_chart', sheet='Summary')['passed']
    assert not _check(formula_map, type='must_have_pivot')['passed']


def test_unreadable_workbook_raises(tmp_path):
    path = tmp_path / 'broken.xlsx'
    path.write_bytes(b'PK\x03\x04 not really a workbook')
    with pytest.raises(WorkbookParseError):
        workbook_service.extract_formula_map(str(path))

    legacy = tmp_path / 'legacy.xls'
    legacy.write_bytes(b'\xd0\xcf\x11\xe0')
    with pytest.raises(WorkbookParseError):
        workbook_service.summarize(str(legacy))


def test_budget_exhaustion_returns_partial_result(workbook):
    formula_map = workbook_service.extract_formula_map(workbook, WorkbookLimits(max_cells=5))

    assert formula_map['is_partial']
    data = _sheet(formula_map, 'Data')
    assert data['partial']
    assert data['formula_count'] < 8
    assert _sheet(formula_map, 'Summary')['error'] == '分析预算已用尽，未扫描'
    assert set(formula_map['errors']) == {'Data', 'Summary', 'Hidden'}

    result = _check(formula_map, type='range_must_have_formulas', sheet='Data', range='B2:B10')
    assert '不完整' in result['detail']


# ------------------------------------------------------------------ 分析服务

def _spreadsheet(alice_submission):
    return AnalysisService.resolve_file(alice_submission, 'hw1.xlsx')


def test_analysis_is_cached_by_content_hash(alice_submission, tmp_path):
    summary = AnalysisService.analyze(alice_submission, 'hw1.xlsx')
    assert summary['formula_cell_count'] == 12
    assert summary['hidden_sheets'] == ['Hidden']

    result = AnalysisService.formula_map(alice_submission, 'hw1.xlsx', actor_id=TA_ID)
    assert result['total_formula_count'] == 12
    assert FormulaAnalysis.query.count() == 1
    first_hash = FormulaAnalysis.query.one().content_hash

    # 再次请求直接命中缓存，不重复写审计日志
    AnalysisService.formula_map(alice_submission, 'hw1.xlsx', actor_id=TA_ID)
    assert AuditLogEntry.query.filter_by(action='analyze_workbook').count() == 1

    # 缓存文件内容变化后整体替换
    submission_file = _spreadsheet(alice_submission)
    make_graded_workbook(submission_file.abs_cache_path, creator='Someone Else')
    AnalysisService.formula_map(alice_submission, 'hw1.xlsx', actor_id=TA_ID)

    analysis = FormulaAnalysis.query.one()
    assert analysis.content_hash != first_hash
    assert analysis.formula_map['total_formula_count'] == 12


def test_run_checks_uses_rubric_by_default(alice_submission):
    results = AnalysisService.run_checks(alice_submission, 'hw1.xlsx', actor_id=TA_ID)

    assert [r['type'] for r in results] == [CheckType.MUST_HAVE_FORMULAS, CheckType.MUST_USE_FUNCTIONS]
    assert [r['passed'] for r in results] == [False, True]
    assert FormulaAnalysis.query.one().range_check_results == results
    entry = AuditLogEntry.query.filter_by(action='run_checks').one()
    assert entry.detail['passed'] == 1
    assert entry.detail['failed'] == 1


def test_run_checks_with_explicit_checks(alice_submission):
    results = AnalysisService.run_checks(alice_submission, 'hw1.xlsx',
                                         checks=[{'type': 'must_use_functions', 'functions': ['IF']}],
                                         actor_id=TA_ID)
    assert results[0]['passed'] is True


def test_non_spreadsheet_is_rejected(alice_submission):
    with pytest.raises(ValidationError):
        AnalysisService.analyze(alice_submission, 'notes.txt')
    with pytest.raises(NotFound):
        AnalysisService.analyze(alice_submission, 'missing.xlsx')


def test_async_analysis_task(app, alice_submission):
    submission_file = _spreadsheet(alice_submission)
    task = AnalysisService.submit(submission_file.id, 'formula_map', actor_id=TA_ID)
    assert task.status in (TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.COMPLETED)

    task.future.result(timeout=60)
    polled = AnalysisService.get_task(task.task_id)
    assert polled.status == TaskStatus.COMPLETED
    assert polled.result['total_formula_count'] == 12
    assert polled.to_dict(include_result=False).keys() >= {'task_id', 'status', 'file_id'}

    db.session.commit()
    assert FormulaAnalysis.query.filter_by(submission_file_id=submission_file.id).count() == 1

    registry = app.extensions['analysis_tasks']
    assert registry.purge_finished(ttl=-1) == 1
    with pytest.raises(NotFound):
        AnalysisService.get_task(task.task_id)


def test_async_task_records_errors(app, alice_submission):
    submission_file = _spreadsheet(alice_submission)
    # 缓存文件内容损坏，提交时的存在性检查可以通过，后台解析时失败
    with open(submission_file.abs_cache_path, 'wb') as f:
        f.write(b'PK\x03\x04 truncated')
    task = AnalysisService.submit(submission_file.id, 'checks',
                                  checks=[{'type': 'must_have_chart'}], actor_id=TA_ID)
    task.future.result(timeout=60)

    polled = AnalysisService.get_task(task.task_id)
    assert polled.status == TaskStatus.ERROR
    assert polled.error_code == WorkbookParseError.code
    assert polled.result is None


def test_unknown_task_kind(alice_submission):
    with pytest.raises(ValidationError):
        AnalysisService.submit(_spreadsheet(alice_submission).id, 'everything')


def test_preview_without_converter(app, alice_submission):
    app.config['PREVIEW_COMMAND'] = 'gradehub-no-such-converter'
    with pytest.raises(PreviewUnavailable):
        AnalysisService.render_preview(alice_submission, 'hw1.xlsx')
