"""提交导入服务

批量导入流程：
1. 并行计算每个压缩包的SHA-256
2. 串行做 (作业, 哈希) 去重检查，重复的直接报告 duplicate，不解压、不写库
3. 并行解压到缓存目录并识别文件类别/编码/损坏
4. 串行写入 Submission/SubmissionFile，随后立即做学生身份匹配
"""
import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from gradehub.extensions import db
from gradehub.errors import ExtractionFailure, DuplicateContent
from gradehub.models import Submission, SubmissionFile, SubmissionStatus, MatchMethod
from gradehub.services.access import get_assignment, get_submission, require_scope
from gradehub.services.audit_service import AuditService
from gradehub.services.file_service import FileService, ExtractionLimits, ExtractedEntry
from gradehub.services.identity_service import IdentityService
from gradehub.utils.helpers import sha256_file, utcnow

logger = logging.getLogger(__name__)


class ImportStatus:
    IMPORTED = 'imported'
    DUPLICATE = DuplicateContent.code
    ERROR = 'error'


@dataclass
class ArchiveJob:
    """单个压缩包在各阶段之间传递的状态"""
    path: str
    filename: str
    content_hash: Optional[str] = None
    cache_dir: Optional[str] = None
    entries: List[ExtractedEntry] = field(default_factory=list)
    status: Optional[str] = None
    message: Optional[str] = None
    submission_id: Optional[int] = None
    student_id: Optional[str] = None
    match_method: Optional[str] = None
    match_confidence: Optional[float] = None

    def result(self):
        return {
            'filename': self.filename,
            'status': self.status,
            'student_id': self.student_id,
            'submission_id': self.submission_id,
            'match_method': self.match_method,
            'match_confidence': self.match_confidence,
            'message': self.message,
        }


class _KeyedLocks:
    """按键划分的进程内锁，用于串行化 (作业, 哈希) 的唯一性检查"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def get(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


_uniqueness_locks = _KeyedLocks()


class IntakeService:
    """提交导入服务类"""

    @staticmethod
    def _hash_archive(job, max_bytes):
        try:
            size = os.path.getsize(job.path)
            if size > max_bytes:
                job.status = ImportStatus.ERROR
                job.message = f'文件大小 {size} 字节超过上限 {max_bytes} 字节'
                return job
            job.content_hash = sha256_file(job.path)
        except OSError as e:
            job.status = ImportStatus.ERROR
            job.message = f'无法读取文件: {e}'
        return job

    @staticmethod
    def _extract(job, limits, encoding_candidates):
        FileService.delete_tree(job.cache_dir)
        try:
            if job.filename.lower().endswith('.zip'):
                entries = FileService.extract_archive(job.path, job.cache_dir, limits)
            else:
                entries = FileService.ingest_single_file(job.path, job.cache_dir)
        except ExtractionFailure as e:
            job.status = ImportStatus.ERROR
            job.message = e.message
            FileService.delete_tree(job.cache_dir)
            return job
        job.entries = [FileService.describe(entry, encoding_candidates) for entry in entries]
        if not any(not entry.is_corrupt for entry in job.entries):
            job.status = ImportStatus.ERROR
            job.message = '压缩包中没有可读取的文件' if job.entries else '压缩包为空'
            FileService.delete_tree(job.cache_dir)
        return job

    @staticmethod
    def _find_existing(assignment_id, content_hash):
        return Submission.query.filter_by(assignment_id=assignment_id, content_hash=content_hash).first()

    @staticmethod
    def _mark_duplicate(job, existing):
        job.status = ImportStatus.DUPLICATE
        job.submission_id = existing.id if existing else None
        job.student_id = existing.student_id if existing else None
        job.message = '相同内容已导入过，已跳过'
        logger.info(f'[导入] 重复的压缩包: {job.filename} (hash={job.content_hash[:12]})')

    @staticmethod
    def _persist(job, assignment, actor_id):
        """写入提交与文件记录，并执行身份匹配"""
        with _uniqueness_locks.get((assignment.id, job.content_hash)):
            existing = IntakeService._find_existing(assignment.id, job.content_hash)
            if existing is not None:
                IntakeService._mark_duplicate(job, existing)
                return job
            try:
                submission = Submission(
                    assignment_id=assignment.id,
                    source_archive_path=os.path.abspath(job.path),
                    original_filename=job.filename,
                    content_hash=job.content_hash,
                    cache_dir=job.cache_dir,
                    received_at=utcnow(),
                    status=SubmissionStatus.UNSTARTED,
                    match_method=MatchMethod.NONE,
                    match_confidence=0.0,
                )
                db.session.add(submission)
                for entry in job.entries:
                    submission.files.append(SubmissionFile(
                        rel_path=entry.rel_path,
                        abs_cache_path=entry.abs_path,
                        file_type=entry.file_type,
                        mime_type=entry.mime_type,
                        size_bytes=entry.size,
                        sha256=entry.sha256,
                        is_corrupt=entry.is_corrupt,
                        corrupt_reason=entry.reason,
                        detected_encoding=entry.encoding,
                    ))
                db.session.flush()

                corrupt = [e.rel_path for e in job.entries if e.is_corrupt]
                AuditService.record(actor_id, 'import_submission', 'submission', submission.id, {
                    'assignment_id': assignment.id,
                    'filename': job.filename,
                    'content_hash': job.content_hash,
                    'file_count': len(job.entries),
                    'corrupt_files': corrupt,
                })
                match = IdentityService.resolve_submission(submission, actor_id)
                db.session.commit()
            except IntegrityError:
                # 其他进程抢先导入了同一内容
                db.session.rollback()
                IntakeService._mark_duplicate(job, IntakeService._find_existing(assignment.id, job.content_hash))
                return job

        job.status = ImportStatus.IMPORTED
        job.submission_id = submission.id
        job.student_id = match.student_id
        job.match_method = match.method
        job.match_confidence = match.confidence
        messages = [] if match.matched else [f'未匹配学生: {match.reason}']
        if corrupt:
            messages.append(f'{len(corrupt)} 个文件损坏')
        job.message = '；'.join(messages) or None
        return job

    @staticmethod
    def import_submissions(assignment_id, archive_paths, actor_id=None):
        """
        批量导入学生提交的压缩包

        Args:
            assignment_id: 目标作业
            archive_paths: 压缩包路径列表
            actor_id: 操作者，None 表示系统导入

        Returns:
            list[dict]: 每个压缩包一条结果 {filename, status, student_id, submission_id, message}
        """
        assignment = get_assignment(assignment_id)
        if actor_id is not None:
            try:
                require_scope(actor_id, assignment)
            except Exception as e:
                AuditService.record_failure(actor_id, 'import_failed', 'assignment', assignment_id,
                                            {'archives': [os.path.basename(p) for p in archive_paths]},
                                            getattr(e, 'message', str(e)))
                raise

        config = current_app.config
        limits = ExtractionLimits.from_config(config)
        candidates = list(config['TEXT_ENCODING_CANDIDATES'])
        max_bytes = config['ARCHIVE_MAX_BYTES']
        workers = max(1, config['INTAKE_WORKERS'])

        jobs = [ArchiveJob(path=p, filename=os.path.basename(p)) for p in archive_paths]
        logger.info(f'[导入] 作业 {assignment_id}: 开始导入 {len(jobs)} 个压缩包')

        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(lambda job: IntakeService._hash_archive(job, max_bytes), jobs))

            # 去重：库中已有的，以及同一批次中内容相同的
            pending = []
            seen = {}
            for job in jobs:
                if job.status is not None:
                    continue
                if job.content_hash in seen:
                    IntakeService._mark_duplicate(job, None)
                    job.message = f'与同批次的 {seen[job.content_hash]} 内容相同，已跳过'
                    continue
                existing = IntakeService._find_existing(assignment.id, job.content_hash)
                if existing is not None:
                    IntakeService._mark_duplicate(job, existing)
                    continue
                seen[job.content_hash] = job.filename
                job.cache_dir = FileService.cache_dir_for(assignment.id, job.content_hash)
                pending.append(job)

            list(pool.map(lambda job: IntakeService._extract(job, limits, candidates), pending))

        for job in pending:
            if job.status == ImportStatus.ERROR:
                continue
            IntakeService._persist(job, assignment, actor_id)

        for job in jobs:
            if job.status == ImportStatus.ERROR:
                logger.warning(f'[导入] 导入失败: {job.filename}: {job.message}')
                AuditService.record_failure(actor_id, 'import_failed', 'assignment', assignment.id,
                                            {'filename': job.filename, 'content_hash': job.content_hash},
                                            job.message)

        summary = {status: sum(1 for j in jobs if j.status == status)
                   for status in (ImportStatus.IMPORTED, ImportStatus.DUPLICATE, ImportStatus.ERROR)}
        logger.info(f'[导入] 作业 {assignment_id}: 完成 {summary}')
        return [job.result() for job in jobs]

    @staticmethod
    def delete_submission(submission_id, actor_id):
        """删除提交（级联删除文件记录）并清理缓存目录"""
        submission = get_submission(submission_id, for_update=True)
        require_scope(actor_id, submission.assignment)
        cache_dir = submission.cache_dir
        AuditService.record(actor_id, 'delete_submission', 'submission', submission.id, {
            'filename': submission.original_filename, 'content_hash': submission.content_hash,
            'student_id': submission.student_id,
        })
        db.session.delete(submission)
        db.session.commit()
        FileService.delete_tree(cache_dir)
