"""工作簿分析服务

在 workbook_service 的纯分析函数之上负责：
- 按 (文件ID, 文件内容SHA-256) 缓存 FormulaAnalysis，内容变化后整体替换
- 检查项执行结果写回缓存
- LibreOffice 预览渲染
- 后台线程池异步分析，返回任务句柄
"""
import os
import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor

from flask import current_app
from sqlalchemy.exc import IntegrityError

from gradehub.extensions import db
from gradehub.errors import GradeHubError, NotFound, PreviewUnavailable, ValidationError, WorkbookParseError
from gradehub.models import FormulaAnalysis, SubmissionFile
from gradehub.rubric import RangeCheck
from gradehub.services import workbook_service
from gradehub.services.access import get_submission, get_submission_file
from gradehub.services.audit_service import AuditService
from gradehub.utils.helpers import sha256_file, utcnow, safe_filename
from gradehub.utils.task_registry import AnalysisTask, TaskRegistry, TaskStatus

logger = logging.getLogger(__name__)


class AnalysisKind:
    SUMMARY = 'summary'
    FORMULA_MAP = 'formula_map'
    CHECKS = 'checks'

    ALL = (SUMMARY, FORMULA_MAP, CHECKS)


def init_analysis(app):
    """创建分析线程池与任务登记表"""
    app.extensions['analysis_executor'] = ThreadPoolExecutor(
        max_workers=max(1, app.config['ANALYSIS_WORKERS']), thread_name_prefix='analysis')
    app.extensions['analysis_tasks'] = TaskRegistry()


def task_registry():
    return current_app.extensions['analysis_tasks']


class AnalysisService:
    """工作簿分析服务类"""

    @staticmethod
    def _limits():
        return workbook_service.WorkbookLimits.from_config(current_app.config)

    @staticmethod
    def _load_file(file_id):
        submission_file = db.session.get(SubmissionFile, file_id)
        if submission_file is None:
            raise NotFound(f'文件不存在: {file_id}', file_id=file_id)
        return submission_file

    @staticmethod
    def resolve_file(submission_id, rel_path):
        """查找提交中的电子表格文件"""
        get_submission(submission_id)
        submission_file = get_submission_file(submission_id, rel_path=rel_path)
        AnalysisService._ensure_readable(submission_file)
        return submission_file

    @staticmethod
    def _ensure_readable(submission_file):
        if not submission_file.is_spreadsheet:
            raise ValidationError(f'不是电子表格文件: {submission_file.rel_path}', file_type=submission_file.file_type)
        if submission_file.is_corrupt:
            raise WorkbookParseError(f'文件已损坏: {submission_file.corrupt_reason}', file_id=submission_file.id)
        if not submission_file.abs_cache_path or not os.path.isfile(submission_file.abs_cache_path):
            raise WorkbookParseError(f'缓存文件不存在: {submission_file.rel_path}', file_id=submission_file.id)

    @staticmethod
    def _cached(submission_file, content_hash):
        """返回与当前内容一致的缓存记录，过期返回None"""
        analysis = FormulaAnalysis.query.filter_by(submission_file_id=submission_file.id).first()
        if analysis is not None and analysis.content_hash == content_hash:
            return analysis
        return None

    @staticmethod
    def _replace(submission_file, content_hash, **fields):
        """整体替换缓存记录（先删后建，不合并旧字段）"""
        FormulaAnalysis.query.filter_by(submission_file_id=submission_file.id).delete()
        analysis = FormulaAnalysis(submission_file_id=submission_file.id, content_hash=content_hash,
                                   analyzed_at=utcnow(), **fields)
        db.session.add(analysis)
        return analysis

    @staticmethod
    def _commit_or_reload(submission_file, content_hash):
        """并发的重复分析以先提交者为准"""
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(f'[工作簿分析] 文件 {submission_file.id} 已被其他任务分析，使用已有结果')
        return AnalysisService._cached(submission_file, content_hash)

    @staticmethod
    def analyze_file(file_id):
        """概览分析（快速），优先使用缓存"""
        submission_file = AnalysisService._load_file(file_id)
        AnalysisService._ensure_readable(submission_file)
        content_hash = sha256_file(submission_file.abs_cache_path)
        cached = AnalysisService._cached(submission_file, content_hash)
        if cached is not None:
            return cached.to_summary()

        summary = workbook_service.summarize(submission_file.abs_cache_path, AnalysisService._limits())
        hidden = [s['name'] for s in summary['sheet_details'] if s['state'] != 'visible']
        AnalysisService._replace(
            submission_file, content_hash,
            sheet_names=summary['sheets'],
            formula_cell_count=summary['formula_cell_count'],
            hidden_sheets=hidden,
            is_partial=summary['is_partial'],
        )
        analysis = AnalysisService._commit_or_reload(submission_file, content_hash)
        return analysis.to_summary() if analysis else summary

    @staticmethod
    def formula_map_for_file(file_id, actor_id=None):
        """完整公式映射，缓存中已有相同内容的映射时直接返回"""
        submission_file = AnalysisService._load_file(file_id)
        AnalysisService._ensure_readable(submission_file)
        content_hash = sha256_file(submission_file.abs_cache_path)
        cached = AnalysisService._cached(submission_file, content_hash)
        if cached is not None and cached.formula_map is not None:
            return cached.formula_map

        try:
            result = workbook_service.extract_formula_map(submission_file.abs_cache_path, AnalysisService._limits())
        except WorkbookParseError as e:
            AuditService.record_failure(actor_id, 'analyze_workbook', 'file', submission_file.id,
                                        {'rel_path': submission_file.rel_path, 'content_hash': content_hash},
                                        e.message)
            raise

        AnalysisService._replace(
            submission_file, content_hash,
            sheet_names=result['sheet_names'],
            used_range=result['used_range'],
            formula_cell_count=result['total_formula_count'],
            has_pivot=result['has_pivot'],
            has_charts=result['has_charts'],
            hidden_sheets=result['hidden_sheets'],
            hidden_rows_cols=result['hidden_rows_cols'],
            formula_map=result,
            is_partial=result['is_partial'],
        )
        AuditService.record(actor_id, 'analyze_workbook', 'file', submission_file.id, {
            'submission_id': submission_file.submission_id,
            'rel_path': submission_file.rel_path,
            'content_hash': content_hash,
            'formula_cell_count': result['total_formula_count'],
            'is_partial': result['is_partial'],
        })
        AnalysisService._commit_or_reload(submission_file, content_hash)
        return result

    @staticmethod
    def parse_checks(checks):
        """检查项可以是字典或 RangeCheck"""
        return [c if isinstance(c, RangeCheck) else RangeCheck.from_dict(c) for c in (checks or [])]

    @staticmethod
    def run_checks_for_file(file_id, checks=None, actor_id=None):
        """
        执行检查项；未指定时使用作业评分细则中定义的全部检查项

        Returns:
            list[dict]: 每项 {type, sheet, range, functions, passed, detail}
        """
        submission_file = AnalysisService._load_file(file_id)
        if checks is None:
            checks = submission_file.submission.assignment.rubric.all_checks()
        checks = AnalysisService.parse_checks(checks)
        formula_map = AnalysisService.formula_map_for_file(file_id, actor_id=actor_id)
        results = workbook_service.evaluate_checks(checks, formula_map)

        content_hash = sha256_file(submission_file.abs_cache_path)
        analysis = AnalysisService._cached(submission_file, content_hash)
        if analysis is not None:
            analysis.range_check_results = results
        passed = sum(1 for r in results if r['passed'])
        AuditService.record(actor_id, 'run_checks', 'file', submission_file.id, {
            'submission_id': submission_file.submission_id,
            'rel_path': submission_file.rel_path,
            'passed': passed,
            'failed': len(results) - passed,
        })
        db.session.commit()
        logger.info(f'[工作簿分析] 文件 {submission_file.rel_path}: 检查项 {passed}/{len(results)} 通过')
        return results

    # ---------------------------------------------------------- 按 (提交, 路径) 调用

    @staticmethod
    def analyze(submission_id, rel_path):
        return AnalysisService.analyze_file(AnalysisService.resolve_file(submission_id, rel_path).id)

    @staticmethod
    def formula_map(submission_id, rel_path, actor_id=None):
        submission_file = AnalysisService.resolve_file(submission_id, rel_path)
        return AnalysisService.formula_map_for_file(submission_file.id, actor_id=actor_id)

    @staticmethod
    def run_checks(submission_id, rel_path, checks=None, actor_id=None):
        submission_file = AnalysisService.resolve_file(submission_id, rel_path)
        return AnalysisService.run_checks_for_file(submission_file.id, checks=checks, actor_id=actor_id)

    @staticmethod
    def render_preview(submission_id, rel_path):
        """
        用 LibreOffice 把工作簿转换为PDF预览（尽力而为）

        Returns:
            str: 预览文件的绝对路径
        """
        submission_file = AnalysisService.resolve_file(submission_id, rel_path)
        config = current_app.config
        content_hash = submission_file.sha256 or sha256_file(submission_file.abs_cache_path)
        out_dir = os.path.join(config['PREVIEW_DIR'], str(submission_file.id), content_hash[:16])
        stem = os.path.splitext(os.path.basename(submission_file.abs_cache_path))[0]
        target = os.path.join(out_dir, f'{stem}.pdf')
        if os.path.isfile(target):
            return target

        os.makedirs(out_dir, exist_ok=True)
        command = [config['PREVIEW_COMMAND'], '--headless', '--convert-to', 'pdf',
                   '--outdir', out_dir, submission_file.abs_cache_path]
        try:
            completed = subprocess.run(command, capture_output=True, timeout=config['PREVIEW_TIMEOUT'],
                                       check=False)
        except FileNotFoundError:
            raise PreviewUnavailable(f'未找到预览转换程序: {config["PREVIEW_COMMAND"]}')
        except subprocess.TimeoutExpired:
            raise PreviewUnavailable(f'预览转换超时（{config["PREVIEW_TIMEOUT"]}秒）')

        if completed.returncode != 0 or not os.path.isfile(target):
            stderr = completed.stderr.decode('utf-8', errors='replace').strip()
            logger.warning(f'[预览] 转换失败 {safe_filename(submission_file.rel_path)}: '
                           f'returncode={completed.returncode}, {stderr[:200]}')
            raise PreviewUnavailable('预览转换失败', returncode=completed.returncode)
        logger.info(f'[预览] 已生成 {target}')
        return target

    # ---------------------------------------------------------- 异步

    @staticmethod
    def submit(file_id, kind, checks=None, actor_id=None):
        """
        提交后台分析任务，立即返回任务句柄

        相同文件的重复请求各自执行，结果以最后完成的为准写入缓存。
        """
        if kind not in AnalysisKind.ALL:
            raise ValidationError(f'未知的分析类型: {kind}', kind=kind)
        submission_file = AnalysisService._load_file(file_id)
        AnalysisService._ensure_readable(submission_file)
        if checks is not None:
            checks = AnalysisService.parse_checks(checks)

        app = current_app._get_current_object()
        registry = task_registry()
        task = registry.add(AnalysisTask(file_id=file_id, kind=kind, content_hash=submission_file.sha256))
        executor = app.extensions['analysis_executor']
        task.future = executor.submit(_run_task, app, registry, task.task_id, file_id, kind, checks, actor_id)
        logger.info(f'[工作簿分析] 已提交后台任务 {task.task_id}: 文件={file_id}, 类型={kind}')
        return task

    @staticmethod
    def get_task(task_id):
        task = task_registry().get(task_id)
        if task is None:
            raise NotFound(f'分析任务不存在或已过期: {task_id}', task_id=task_id)
        return task


def _run_task(app, registry, task_id, file_id, kind, checks, actor_id):
    """后台线程中执行，使用独立的应用上下文与数据库会话"""
    with app.app_context():
        registry.update(task_id, status=TaskStatus.RUNNING)
        try:
            if kind == AnalysisKind.SUMMARY:
                result = AnalysisService.analyze_file(file_id)
            elif kind == AnalysisKind.FORMULA_MAP:
                result = AnalysisService.formula_map_for_file(file_id, actor_id=actor_id)
            else:
                result = AnalysisService.run_checks_for_file(file_id, checks=checks, actor_id=actor_id)
        except GradeHubError as e:
            db.session.rollback()
            registry.update(task_id, status=TaskStatus.ERROR, error=e.message, error_code=e.code)
            logger.warning(f'[工作簿分析] 任务 {task_id} 失败: {e.message}')
            return None
        except Exception as e:
            db.session.rollback()
            registry.update(task_id, status=TaskStatus.ERROR, error=str(e), error_code='internal_error')
            logger.exception(f'[工作簿分析] 任务 {task_id} 异常')
            return None
        registry.update(task_id, status=TaskStatus.COMPLETED, result=result)
        return result
