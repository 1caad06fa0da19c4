"""工作簿分析引擎

只读分析，不计算公式：
- summarize: 快速概览（工作表列表、公式单元格总数），用于交互
- extract_formula_map: 完整公式映射（每个公式单元格的地址/显示值/公式文本、函数集合、
  透视表/图表、隐藏工作表、隐藏行列、已用范围）；单个工作表出错只标记该表，返回部分结果
- evaluate_checks: 在已提取的公式映射上执行细则检查项（纯读取）

本模块不依赖应用上下文，可以在工作线程中运行。
"""
import os
import re
import time
import logging
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta

from openpyxl import load_workbook
from openpyxl.utils.cell import range_boundaries, get_column_letter, column_index_from_string
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.formula import ArrayFormula, DataTableFormula

from gradehub.errors import WorkbookParseError
from gradehub.rubric import CheckType

logger = logging.getLogger(__name__)

STRING_LITERAL = re.compile(r'"(?:[^"]|"")*"')
QUOTED_SHEET_REF = re.compile(r"'(?:[^']|'')*'!")
FUNCTION_CALL = re.compile(r"(?<![A-Za-z0-9_.!$'])((?:_xl[a-z]+\.)*[A-Za-z][A-Za-z0-9_.]*)\s*\(")
FUNCTION_PREFIX = re.compile(r'^(?:_xl[a-z]+\.)+', re.IGNORECASE)
CONSTANT_FORMULA = re.compile(r'^=[\s\d.+\-*/^()%]+$')

# openpyxl 只能读取 OOXML 格式
SUPPORTED_EXTENSIONS = {'.xlsx', '.xlsm', '.xltx', '.xltm'}

# 检查结果中最多列出的单元格数
MAX_LISTED_CELLS = 20
MAX_CHECK_CELLS = 100000


@dataclass
class WorkbookLimits:
    """分析预算，超出时返回部分结果"""
    max_bytes: int = 50 * 1024 * 1024
    max_cells: int = 500000
    time_budget: float = 60.0

    @classmethod
    def from_config(cls, config):
        return cls(max_bytes=config['WORKBOOK_MAX_BYTES'],
                   max_cells=config['WORKBOOK_MAX_CELLS'],
                   time_budget=config['WORKBOOK_TIME_BUDGET'])


def formula_text(value):
    """单元格值为公式时返回公式文本，否则返回None"""
    if isinstance(value, ArrayFormula):
        return value.text
    if isinstance(value, DataTableFormula):
        return '=TABLE()'
    if isinstance(value, str) and value.startswith('=') and len(value) > 1:
        return value
    return None


def extract_functions(formula):
    """提取公式中用到的函数名（大写、去掉 _xlfn. 等前缀，忽略字符串和带引号的工作表名）"""
    if not formula:
        return set()
    text = STRING_LITERAL.sub('""', formula)
    text = QUOTED_SHEET_REF.sub('', text)
    names = set()
    for match in FUNCTION_CALL.finditer(text):
        name = FUNCTION_PREFIX.sub('', match.group(1)).upper()
        if name:
            names.add(name)
    return names


def is_constant_formula(formula):
    """不引用任何单元格、不调用函数的公式（如 =100*1.05），等同于硬编码"""
    return bool(formula and CONSTANT_FORMULA.match(formula))


def json_value(value):
    """显示值转为可JSON序列化的形式"""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    return str(value)


def _open(path, limits, **kwargs):
    if not os.path.isfile(path):
        raise WorkbookParseError(f'文件不存在: {os.path.basename(path)}')
    ext = os.path.splitext(path)[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise WorkbookParseError(f'不支持的工作簿格式: {ext or "无扩展名"}')
    size = os.path.getsize(path)
    if size > limits.max_bytes:
        raise WorkbookParseError(f'工作簿大小 {size} 字节超过上限 {limits.max_bytes} 字节')
    try:
        return load_workbook(path, keep_links=False, **kwargs)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError, TypeError) as e:
        raise WorkbookParseError(f'工作簿无法打开: {e}')
    except Exception as e:
        # openpyxl 在畸形XML上会抛出各种解析异常
        logger.warning(f'[工作簿分析] 打开失败 {os.path.basename(path)}: {type(e).__name__}: {e}')
        raise WorkbookParseError(f'工作簿无法打开: {type(e).__name__}: {e}')


def _sheet_state(ws):
    return getattr(ws, 'sheet_state', 'visible') or 'visible'


def summarize(path, limits=None):
    """快速概览：只读流式打开，统计工作表与公式单元格数"""
    limits = limits or WorkbookLimits()
    started = time.monotonic()
    wb = _open(path, limits, read_only=True, data_only=False)
    try:
        sheets = []
        total = 0
        partial = False
        scanned = 0
        for ws in wb.worksheets:
            count = 0
            error = None
            try:
                for row in ws.iter_rows(values_only=True):
                    for value in row:
                        if value is None:
                            continue
                        scanned += 1
                        if formula_text(value) is not None:
                            count += 1
                    if scanned > limits.max_cells or time.monotonic() - started > limits.time_budget:
                        error = '超出分析预算，统计不完整'
                        break
            except Exception as e:
                error = f'工作表读取失败: {type(e).__name__}: {e}'
            if error:
                partial = True
            total += count
            sheets.append({'name': ws.title, 'state': _sheet_state(ws), 'formula_count': count, 'error': error})
        return {
            'sheets': list(wb.sheetnames),
            'sheet_details': sheets,
            'formula_cell_count': total,
            'is_partial': partial,
        }
    finally:
        wb.close()


def _hidden_rows_cols(ws):
    rows = sorted(idx for idx, dim in ws.row_dimensions.items() if dim.hidden)
    columns = set()
    for key, dim in ws.column_dimensions.items():
        if not dim.hidden:
            continue
        start = dim.min or column_index_from_string(key)
        end = dim.max or start
        columns.update(range(start, end + 1))
    return rows, [get_column_letter(c) for c in sorted(columns)]


def _scan_sheet(ws, values_ws, budget):
    """扫描单个工作表的全部单元格"""
    info = {
        'name': ws.title,
        'state': _sheet_state(ws),
        'used_range': None,
        'formula_count': 0,
        'formulas': [],
        'functions_used': [],
        'constant_cells': [],
        'hidden_rows': [],
        'hidden_columns': [],
        'has_pivot': bool(getattr(ws, '_pivots', None)),
        'chart_count': len(getattr(ws, '_charts', None) or []),
        'error': None,
        'partial': False,
    }
    try:
        info['hidden_rows'], info['hidden_columns'] = _hidden_rows_cols(ws)
    except Exception as e:
        info['error'] = f'读取隐藏行列失败: {type(e).__name__}: {e}'
        info['partial'] = True

    functions = set()
    bounds = None
    try:
        for row in ws.iter_rows():
            for cell in row:
                value = cell.value
                if value is None:
                    continue
                budget['cells'] += 1
                r, c = cell.row, cell.column
                if bounds is None:
                    bounds = [r, c, r, c]
                else:
                    bounds = [min(bounds[0], r), min(bounds[1], c), max(bounds[2], r), max(bounds[3], c)]
                text = formula_text(value)
                if text is not None:
                    displayed = None
                    if values_ws is not None:
                        displayed = json_value(values_ws[cell.coordinate].value)
                    info['formulas'].append({'cell': cell.coordinate, 'formula': text, 'value': displayed})
                    functions.update(extract_functions(text))
                elif isinstance(value, (int, float)) and not isinstance(value, bool):
                    info['constant_cells'].append(cell.coordinate)
            if budget['cells'] > budget['max_cells']:
                raise _BudgetExceeded('单元格数超过分析上限')
            if time.monotonic() > budget['deadline']:
                raise _BudgetExceeded('分析超时')
    except _BudgetExceeded as e:
        info['error'] = f'{e}，结果不完整'
        info['partial'] = True
        budget['exhausted'] = True
    except Exception as e:
        info['error'] = f'工作表解析失败: {type(e).__name__}: {e}'
        info['partial'] = True

    if bounds is not None:
        info['used_range'] = (f'{get_column_letter(bounds[1])}{bounds[0]}:'
                              f'{get_column_letter(bounds[3])}{bounds[2]}')
    info['formula_count'] = len(info['formulas'])
    info['functions_used'] = sorted(functions)
    return info


def extract_formula_map(path, limits=None):
    """
    提取完整公式映射

    工作簿无法打开时抛出 WorkbookParseError；单个工作表失败或超出预算时，
    该表标记 error/partial，其余工作表照常返回。
    """
    limits = limits or WorkbookLimits()
    started = time.monotonic()
    wb = _open(path, limits, data_only=False)
    try:
        values_wb = load_workbook(path, data_only=True, keep_links=False)
    except Exception as e:
        logger.warning(f'[工作簿分析] 读取缓存值失败 {os.path.basename(path)}: {e}')
        values_wb = None

    budget = {'cells': 0, 'max_cells': limits.max_cells, 'deadline': started + limits.time_budget,
              'exhausted': False}
    sheets = []
    for ws in wb.worksheets:
        if budget['exhausted']:
            sheets.append({
                'name': ws.title, 'state': _sheet_state(ws), 'used_range': None, 'formula_count': 0,
                'formulas': [], 'functions_used': [], 'constant_cells': [], 'hidden_rows': [],
                'hidden_columns': [], 'has_pivot': False, 'chart_count': 0,
                'error': '分析预算已用尽，未扫描', 'partial': True,
            })
            continue
        values_ws = None
        if values_wb is not None and ws.title in values_wb.sheetnames:
            values_ws = values_wb[ws.title]
        sheets.append(_scan_sheet(ws, values_ws, budget))

    chartsheets = [{'name': cs.title, 'state': _sheet_state(cs)} for cs in getattr(wb, 'chartsheets', [])]
    hidden = [s['name'] for s in sheets + chartsheets if s['state'] != 'visible']
    result = {
        'sheet_names': list(wb.sheetnames),
        'sheets': sheets,
        'chartsheets': [c['name'] for c in chartsheets],
        'total_formula_count': sum(s['formula_count'] for s in sheets),
        'hidden_sheets': hidden,
        'has_pivot': any(s['has_pivot'] for s in sheets),
        'has_charts': bool(chartsheets) or any(s['chart_count'] for s in sheets),
        'used_range': {s['name']: s['used_range'] for s in sheets},
        'hidden_rows_cols': {s['name']: {'rows': s['hidden_rows'], 'columns': s['hidden_columns']}
                             for s in sheets if s['hidden_rows'] or s['hidden_columns']},
        'is_partial': any(s['partial'] for s in sheets),
        'errors': {s['name']: s['error'] for s in sheets if s['error']},
    }
    logger.info(f'[工作簿分析] {os.path.basename(path)}: {len(sheets)} 个工作表, '
                f'{result["total_formula_count"]} 个公式, 耗时 {time.monotonic() - started:.2f}s'
                f'{"（部分结果）" if result["is_partial"] else ""}')
    return result


class _BudgetExceeded(Exception):
    pass


# ---------------------------------------------------------------- 检查项

def _split_sheet(ref):
    """'Sheet1!B2:B10' -> ('Sheet1', 'B2:B10')"""
    if ref and '!' in ref:
        sheet, cells = ref.rsplit('!', 1)
        return sheet.strip("'"), cells
    return None, ref


def _range_cells(ref, used_range):
    """展开范围内的单元格地址，整行/整列引用按已用范围截断"""
    min_col, min_row, max_col, max_row = range_boundaries(ref.replace('$', ''))
    if None in (min_col, min_row, max_col, max_row):
        if not used_range:
            return []
        u_min_col, u_min_row, u_max_col, u_max_row = range_boundaries(used_range)
        min_col = min_col or u_min_col
        max_col = max_col or u_max_col
        min_row = min_row or u_min_row
        max_row = max_row or u_max_row
    area = (max_col - min_col + 1) * (max_row - min_row + 1)
    if area > MAX_CHECK_CELLS:
        raise ValueError(f'范围 {ref} 过大（{area} 个单元格）')
    return [f'{get_column_letter(c)}{r}' for r in range(min_row, max_row + 1)
            for c in range(min_col, max_col + 1)]


def _listing(cells):
    shown = ', '.join(cells[:MAX_LISTED_CELLS])
    if len(cells) > MAX_LISTED_CELLS:
        shown += f' 等 {len(cells)} 个'
    return shown


def _default_sheet(formula_map):
    for sheet in formula_map['sheets']:
        if sheet['state'] == 'visible':
            return sheet['name']
    return formula_map['sheets'][0]['name'] if formula_map['sheets'] else None


def _result(check, sheet_name, passed, detail):
    return {
        'type': check.type,
        'sheet': sheet_name,
        'range': check.range,
        'functions': list(check.functions),
        'passed': passed,
        'detail': detail,
    }


def _check_formulas_present(check, sheet, cells):
    formulas = {f['cell'] for f in sheet['formulas']}
    constants = set(sheet['constant_cells'])
    missing = [c for c in cells if c not in formulas]
    if not missing:
        return True, f'{check.range} 中全部 {len(cells)} 个单元格均包含公式'
    hardcoded = [c for c in missing if c in constants]
    detail = f'{check.range} 中 {len(missing)} 个单元格没有公式: {_listing(missing)}'
    if hardcoded:
        detail += f'；其中硬编码数值: {_listing(hardcoded)}'
    return False, detail


def _check_not_hardcoded(check, sheet, cells):
    wanted = set(cells)
    constants = [c for c in sheet['constant_cells'] if c in wanted]
    constant_formulas = [f['cell'] for f in sheet['formulas']
                         if f['cell'] in wanted and is_constant_formula(f['formula'])]
    offenders = sorted(set(constants + constant_formulas), key=cells.index)
    if not offenders:
        return True, f'{check.range} 中没有硬编码数值'
    return False, f'{check.range} 中存在硬编码数值: {_listing(offenders)}'


def _check_functions(check, formula_map, sheet, cells):
    if cells is not None:
        wanted = set(cells)
        used = set()
        for f in sheet['formulas']:
            if f['cell'] in wanted:
                used.update(extract_functions(f['formula']))
        scope = f'{sheet["name"]}!{check.range}'
    elif sheet is not None:
        used = set(sheet['functions_used'])
        scope = f'工作表 {sheet["name"]}'
    else:
        used = {fn for s in formula_map['sheets'] for fn in s['functions_used']}
        scope = '整个工作簿'
    missing = [fn for fn in check.functions if fn not in used]
    if not missing:
        return True, f'{scope} 使用了 {", ".join(check.functions)}'
    return False, f'{scope} 未使用函数: {", ".join(missing)}'


def evaluate_check(check, formula_map):
    """在公式映射上执行单个检查项"""
    sheet_name, cell_ref = _split_sheet(check.range)
    sheet_name = check.sheet or sheet_name
    sheets = {s['name']: s for s in formula_map['sheets']}

    if check.type == CheckType.MUST_HAVE_PIVOT:
        if sheet_name:
            sheet = sheets.get(sheet_name)
            passed = bool(sheet and sheet['has_pivot'])
        else:
            passed = formula_map['has_pivot']
        return _result(check, sheet_name, passed, '包含数据透视表' if passed else '未找到数据透视表')

    if check.type == CheckType.MUST_HAVE_CHART:
        if sheet_name:
            sheet = sheets.get(sheet_name)
            passed = bool(sheet and sheet['chart_count']) or sheet_name in formula_map.get('chartsheets', [])
        else:
            passed = formula_map['has_charts']
        return _result(check, sheet_name, passed, '包含图表' if passed else '未找到图表')

    if check.type == CheckType.MUST_USE_FUNCTIONS and not sheet_name and not cell_ref:
        passed, detail = _check_functions(check, formula_map, None, None)
        return _result(check, None, passed, detail)

    sheet_name = sheet_name or _default_sheet(formula_map)
    sheet = sheets.get(sheet_name)
    if sheet is None:
        return _result(check, sheet_name, False, f'工作表不存在: {sheet_name}')

    if check.type in CheckType.NEEDS_RANGE and not cell_ref:
        return _result(check, sheet_name, False, f'范围无效: {check.range}')

    cells = None
    if cell_ref:
        try:
            cells = _range_cells(cell_ref, sheet['used_range'])
        except ValueError as e:
            return _result(check, sheet_name, False, f'范围无效: {e}')

    if check.type == CheckType.MUST_HAVE_FORMULAS:
        passed, detail = _check_formulas_present(check, sheet, cells)
    elif check.type == CheckType.NO_HARDCODED:
        passed, detail = _check_not_hardcoded(check, sheet, cells)
    else:
        passed, detail = _check_functions(check, formula_map, sheet, cells)

    if sheet['partial']:
        detail += f'（工作表解析不完整: {sheet["error"]}）'
    return _result(check, sheet_name, passed, detail)


def evaluate_checks(checks, formula_map):
    """依次执行检查项，返回每项的通过/失败与说明"""
    return [evaluate_check(check, formula_map) for check in checks]
