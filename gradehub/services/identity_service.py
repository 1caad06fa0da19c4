"""学生身份匹配服务

导入后立即按优先级尝试自动匹配：
1. 文件名（压缩包名/顶层文件夹名）中的学号或姓名
2. 文件内容/元数据（student_id.txt、文本文件头部、Office文档作者）
3. 都失败则留空，进入待匹配队列
"""
import os
import re
import zipfile
import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import List, Optional
from xml.etree import ElementTree

from flask import current_app

from gradehub.extensions import db
from gradehub.errors import ValidationError, NotFound, NoMatch, AmbiguousMatch
from gradehub.models import Student, Submission, SubmissionStatus, MatchMethod, FileCategory
from gradehub.services.access import get_submission, require_scope
from gradehub.services.audit_service import AuditService
from gradehub.services.claim_service import ClaimService

logger = logging.getLogger(__name__)

# 文件名中常见的非姓名词
FILENAME_STOPWORDS = {
    'hw', 'homework', 'assignment', 'assign', 'lab', 'project', 'proj', 'submission', 'submit',
    'final', 'late', 'draft', 'zip', 'version', 'v', 'part', 'exercise', 'ex', 'task', 'report',
    'xlsx', 'docx', 'pdf', 'copy', 'new', 'the', 'of', 'and',
}

# 元数据置信度系数
METADATA_FILE_ID_CONFIDENCE = 0.9
TEXT_HEADER_ID_CONFIDENCE = 0.8
OFFICE_AUTHOR_ID_CONFIDENCE = 0.85
METADATA_NAME_FACTOR = 0.9
OFFICE_AUTHOR_NAME_FACTOR = 0.8

CORE_PROPS_NS = {
    'dc': 'http://purl.org/dc/elements/1.1/',
    'cp': 'http://schemas.openxmlformats.org/package/2006/metadata/core-properties',
}


@dataclass
class MatchResult:
    """匹配结果"""
    student_id: Optional[str] = None
    confidence: float = 0.0
    method: str = MatchMethod.NONE
    reason: str = ''
    ambiguous: bool = False
    candidates: List[str] = field(default_factory=list)

    @property
    def matched(self):
        return self.student_id is not None

    @property
    def code(self):
        if self.matched:
            return None
        return AmbiguousMatch.code if self.ambiguous else NoMatch.code

    def to_dict(self):
        return {
            'code': self.code,
            'student_id': self.student_id,
            'confidence': self.confidence,
            'method': self.method,
            'reason': self.reason,
            'ambiguous': self.ambiguous,
            'candidates': self.candidates,
        }


def normalize_words(text):
    """拆分为小写字母词（去掉数字、下划线与标点，保留中文等Unicode字母）"""
    return re.findall(r'[^\W\d_]+', (text or '').lower())


def _name_variants(name):
    words = normalize_words(name)
    if not words:
        return []
    variants = {' '.join(words), ' '.join(reversed(words)), ''.join(words), ''.join(reversed(words))}
    if len(words) > 2:
        first_last = [words[0], words[-1]]
        variants.update({' '.join(first_last), ' '.join(reversed(first_last)),
                         ''.join(first_last), ''.join(reversed(first_last))})
    return list(variants)


def _windows(words, max_size=3):
    for size in range(1, max_size + 1):
        for start in range(0, len(words) - size + 1):
            window = words[start:start + size]
            yield ' '.join(window)
            if size > 1:
                yield ''.join(window)


def name_similarity(text, student_name):
    """文本中任意连续1~3个词与学生姓名（含姓名倒序）的最大相似度"""
    words = [w for w in normalize_words(text) if w not in FILENAME_STOPWORDS]
    variants = _name_variants(student_name)
    if not words or not variants:
        return 0.0
    best = 0.0
    for window in _windows(words):
        for variant in variants:
            if (' ' in window) != (' ' in variant):
                continue
            ratio = SequenceMatcher(None, window, variant).ratio()
            if ratio > best:
                best = ratio
                if best == 1.0:
                    return best
    return best


class IdentityService:
    """学生身份匹配服务类"""

    @staticmethod
    def _settings():
        config = current_app.config
        return {
            'pattern': re.compile(config['STUDENT_ID_PATTERN']),
            'threshold': config['MATCH_NAME_THRESHOLD'],
            'margin': config['MATCH_AMBIGUITY_MARGIN'],
            'metadata_files': [n.lower() for n in config['METADATA_FILENAMES']],
        }

    @staticmethod
    def _id_candidates(text, pattern):
        """从文本中提取可能的学号"""
        candidates = []
        for token in pattern.findall(text or ''):
            candidates.append(token)
            if token[:1].isalpha():
                candidates.append(token[1:])
        candidates.extend(t for t in re.split(r'[^0-9A-Za-z]+', text or '') if t)
        return candidates

    @staticmethod
    def match_id(text, roster_by_id, pattern):
        """在名册中查找文本里出现的学号，返回匹配到的学号集合"""
        found = []
        for candidate in IdentityService._id_candidates(text, pattern):
            student = roster_by_id.get(candidate.lower())
            if student is not None and student.student_id not in found:
                found.append(student.student_id)
        return found

    @staticmethod
    def match_name(text, roster, threshold, margin):
        """
        按姓名模糊匹配

        Returns:
            (student_id, score, ambiguous, candidates)
        """
        scored = []
        for student in roster:
            score = name_similarity(text, student.name)
            if score >= threshold:
                scored.append((score, student.student_id))
        if not scored:
            return None, 0.0, False, []
        scored.sort(key=lambda item: item[0], reverse=True)
        best_score, best_id = scored[0]
        rivals = [sid for score, sid in scored[1:] if best_score - score < margin]
        if rivals:
            return None, best_score, True, [best_id] + rivals
        return best_id, round(best_score, 3), False, [best_id]

    @staticmethod
    def _from_ids(ids, confidence, method, source):
        if len(ids) == 1:
            return MatchResult(student_id=ids[0], confidence=confidence, method=method,
                               reason=f'{source}中包含学号 {ids[0]}', candidates=ids)
        return MatchResult(ambiguous=True, candidates=ids,
                           reason=f'{source}中包含多个学号: {", ".join(ids)}')

    @staticmethod
    def _from_name(text, roster, settings, method, factor, source):
        student_id, score, ambiguous, candidates = IdentityService.match_name(
            text, roster, settings['threshold'], settings['margin'])
        if ambiguous:
            return MatchResult(ambiguous=True, candidates=candidates,
                               reason=f'{source}与多名学生姓名相近: {", ".join(candidates)}')
        if student_id:
            return MatchResult(student_id=student_id, confidence=round(score * factor, 3), method=method,
                               reason=f'{source}与学生姓名匹配（相似度 {score:.2f}）', candidates=candidates)
        return None

    @staticmethod
    def filename_sources(submission):
        """文件名启发式使用的文本：压缩包名（去扩展名）与共同的顶层文件夹名"""
        sources = [os.path.splitext(submission.original_filename)[0]]
        top_dirs = {f.rel_path.split('/')[0] for f in submission.files if '/' in f.rel_path}
        if len(top_dirs) == 1:
            sources.append(top_dirs.pop())
        return sources

    @staticmethod
    def match_by_filename(submission, roster, settings):
        roster_by_id = {s.student_id.lower(): s for s in roster}
        ambiguous = None
        for source in IdentityService.filename_sources(submission):
            ids = IdentityService.match_id(source, roster_by_id, settings['pattern'])
            if ids:
                result = IdentityService._from_ids(ids, 1.0, MatchMethod.FILENAME, f'文件名 "{source}" ')
                if result.matched:
                    return result
                ambiguous = ambiguous or result
                continue
            result = IdentityService._from_name(source, roster, settings, MatchMethod.FILENAME, 1.0,
                                                f'文件名 "{source}" ')
            if result is not None:
                if result.matched:
                    return result
                ambiguous = ambiguous or result
        return ambiguous

    @staticmethod
    def _read_text(path, encoding, limit=4096):
        try:
            with open(path, 'rb') as f:
                raw = f.read(limit)
        except OSError:
            return ''
        return raw.decode(encoding or 'utf-8', errors='ignore')

    @staticmethod
    def _office_authors(path):
        """读取OOXML文档 docProps/core.xml 中的作者与最后修改者"""
        try:
            with zipfile.ZipFile(path) as archive:
                with archive.open('docProps/core.xml') as f:
                    root = ElementTree.fromstring(f.read(256 * 1024))
        except (KeyError, zipfile.BadZipFile, ElementTree.ParseError, OSError, RuntimeError):
            return []
        authors = []
        for tag in ('dc:creator', 'cp:lastModifiedBy'):
            node = root.find(tag, CORE_PROPS_NS)
            if node is not None and node.text and node.text.strip():
                authors.append(node.text.strip())
        return authors

    @staticmethod
    def match_by_metadata(submission, roster, settings):
        roster_by_id = {s.student_id.lower(): s for s in roster}
        files = [f for f in submission.files if not f.is_corrupt and f.abs_cache_path]
        ambiguous = None

        # 1. 元数据文件（student_id.txt 等）
        for f in files:
            if os.path.basename(f.rel_path).lower() not in settings['metadata_files']:
                continue
            content = IdentityService._read_text(f.abs_cache_path, f.detected_encoding).strip()
            ids = IdentityService.match_id(content, roster_by_id, settings['pattern'])
            if ids:
                result = IdentityService._from_ids(ids, METADATA_FILE_ID_CONFIDENCE, MatchMethod.METADATA,
                                                   f'元数据文件 {f.rel_path} ')
            else:
                result = IdentityService._from_name(content, roster, settings, MatchMethod.METADATA,
                                                    METADATA_NAME_FACTOR, f'元数据文件 {f.rel_path} ')
            if result is not None:
                if result.matched:
                    return result
                ambiguous = ambiguous or result

        # 2. 文本文件头部出现的学号（必须在名册中）
        header_ids = []
        for f in files:
            if f.file_type != FileCategory.TEXT:
                continue
            header = IdentityService._read_text(f.abs_cache_path, f.detected_encoding, limit=2048)
            for sid in IdentityService.match_id(header, roster_by_id, settings['pattern']):
                if sid not in header_ids:
                    header_ids.append(sid)
        if header_ids:
            result = IdentityService._from_ids(header_ids, TEXT_HEADER_ID_CONFIDENCE, MatchMethod.METADATA,
                                               '文本文件头部')
            if result.matched:
                return result
            ambiguous = ambiguous or result

        # 3. Office文档属性中的作者
        for f in files:
            if f.file_type not in (FileCategory.SPREADSHEET, FileCategory.DOCUMENT):
                continue
            for author in IdentityService._office_authors(f.abs_cache_path):
                ids = IdentityService.match_id(author, roster_by_id, settings['pattern'])
                if ids:
                    result = IdentityService._from_ids(ids, OFFICE_AUTHOR_ID_CONFIDENCE, MatchMethod.METADATA,
                                                       f'{f.rel_path} 的文档作者')
                else:
                    result = IdentityService._from_name(author, roster, settings, MatchMethod.METADATA,
                                                        OFFICE_AUTHOR_NAME_FACTOR, f'{f.rel_path} 的文档作者')
                if result is not None:
                    if result.matched:
                        return result
                    ambiguous = ambiguous or result
        return ambiguous

    @staticmethod
    def resolve(submission, roster):
        """按优先级尝试自动匹配，不修改提交"""
        settings = IdentityService._settings()
        ambiguous = None
        for strategy in (IdentityService.match_by_filename, IdentityService.match_by_metadata):
            result = strategy(submission, roster, settings)
            if result is None:
                continue
            if result.matched:
                return result
            ambiguous = ambiguous or result
        if ambiguous is not None:
            return ambiguous
        return MatchResult(reason='未找到可识别的学号或姓名')

    @staticmethod
    def resolve_submission(submission, actor_id=None):
        """导入后自动匹配，写入匹配字段与审计日志（调用方提交事务）"""
        roster = Student.query.filter_by(course_id=submission.assignment.course_id).all()
        result = IdentityService.resolve(submission, roster)
        if result.matched:
            submission.student_id = result.student_id
            submission.match_confidence = result.confidence
            submission.match_method = result.method
        else:
            submission.student_id = None
            submission.match_confidence = 0.0
            submission.match_method = MatchMethod.NONE
        db.session.flush()
        AuditService.record(actor_id, 'auto_match', 'submission', submission.id, result.to_dict())
        logger.info(f'[匹配] 提交 {submission.id} ({submission.original_filename}): '
                    f'{result.student_id or "未匹配"}, 方式={result.method}, 置信度={result.confidence}, '
                    f'{result.reason}')
        return result

    @staticmethod
    def list_unmatched(assignment_id):
        """待匹配队列：未匹配学生且未被隔离的提交，按接收时间先后排列"""
        return Submission.query.filter(
            Submission.assignment_id == assignment_id,
            Submission.student_id.is_(None),
            Submission.status != SubmissionStatus.FLAGGED
        ).order_by(Submission.received_at.asc(), Submission.id.asc()).all()

    @staticmethod
    def manual_match(submission_id, student_id, actor_id):
        """人工匹配学生（可重复调用，结果相同）"""
        submission = get_submission(submission_id, for_update=True)
        assignment = submission.assignment
        detail = {'student_id': student_id, 'previous_student_id': submission.student_id,
                  'previous_method': submission.match_method}
        try:
            require_scope(actor_id, assignment)
            student = db.session.get(Student, (assignment.course_id, student_id))
            if student is None:
                raise NotFound(f'课程名册中不存在学生: {student_id}', student_id=student_id)
        except Exception as e:
            AuditService.record_failure(actor_id, 'manual_match', 'submission', submission_id, detail,
                                        getattr(e, 'message', str(e)))
            raise

        submission.student_id = student.student_id
        submission.match_method = MatchMethod.MANUAL
        submission.match_confidence = 1.0
        AuditService.record(actor_id, 'manual_match', 'submission', submission.id, detail)
        db.session.commit()
        logger.info(f'[匹配] 助教 {actor_id} 将提交 {submission.id} 人工匹配到学生 {student.student_id}')
        return submission

    @staticmethod
    def quarantine(submission_id, reason, actor_id):
        """隔离无法匹配的提交：保持未匹配，记录原因，标记为 flagged（不在评分队列中但仍可见）"""
        reason = (reason or '').strip()
        submission = get_submission(submission_id, for_update=True)
        detail = {'reason': reason, 'previous_status': submission.status}
        try:
            require_scope(actor_id, submission.assignment)
            if not reason:
                raise ValidationError('隔离原因不能为空')
        except Exception as e:
            AuditService.record_failure(actor_id, 'quarantine', 'submission', submission_id, detail,
                                        getattr(e, 'message', str(e)))
            raise

        note = f'[隔离] {reason}'
        existing = submission.notes or ''
        if note not in existing.splitlines():
            submission.notes = f'{existing}\n{note}'.strip()
        ClaimService.apply_transition(submission, SubmissionStatus.FLAGGED)
        AuditService.record(actor_id, 'quarantine', 'submission', submission.id, detail)
        db.session.commit()
        logger.info(f'[匹配] 助教 {actor_id} 隔离提交 {submission.id}: {reason}')
        return submission
