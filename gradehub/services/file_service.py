"""文件处理服务：压缩包解压、文件分类、编码检测"""
import codecs
import os
import shutil
import time
import zipfile
import zlib
import logging
from dataclasses import dataclass
from typing import Optional

import chardet
from flask import current_app

from gradehub.errors import ExtractionFailure, CorruptFile
from gradehub.models.submission import FileCategory
from gradehub.utils.helpers import safe_filename, sha256_file

logger = logging.getLogger(__name__)

# 系统生成的垃圾文件，不计入提交内容
JUNK_NAMES = {'.ds_store', 'thumbs.db', 'desktop.ini'}
JUNK_PREFIXES = ('__MACOSX/',)

# 文件魔数（仅用于损坏检测，分类仍然按扩展名）
MAGIC_NUMBERS = {
    'xlsx': (b'PK\x03\x04',),
    'xlsm': (b'PK\x03\x04',),
    'xltx': (b'PK\x03\x04',),
    'xltm': (b'PK\x03\x04',),
    'ods': (b'PK\x03\x04',),
    'docx': (b'PK\x03\x04',),
    'pptx': (b'PK\x03\x04',),
    'odt': (b'PK\x03\x04',),
    'xls': (b'\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1',),
    'doc': (b'\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1',),
    'ppt': (b'\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1',),
    'pdf': (b'%PDF',),
    'png': (b'\x89PNG\r\n\x1a\n',),
    'jpg': (b'\xFF\xD8\xFF',),
    'jpeg': (b'\xFF\xD8\xFF',),
    'gif': (b'GIF87a', b'GIF89a'),
    'zip': (b'PK\x03\x04', b'PK\x05\x06'),
}

BOMS = (
    (b'\xef\xbb\xbf', 'utf-8-sig'),
    (b'\xff\xfe', 'utf-16-le'),
    (b'\xfe\xff', 'utf-16-be'),
)

# chardet 只看采样开头部分，结果低于该置信度时不采用
CHARDET_SAMPLE_BYTES = 64 * 1024
CHARDET_MIN_CONFIDENCE = 0.7

# chardet 给出的编码归到同族的候选编码
ENCODING_FAMILIES = {
    'gb2312': 'gb18030',
    'gbk': 'gb18030',
    'iso8859-1': 'cp1252',
    'iso8859-9': 'cp1252',
    'iso8859-15': 'cp1252',
}


def _codec_name(encoding):
    try:
        return codecs.lookup(encoding).name
    except LookupError:
        return encoding.lower()


@dataclass
class ExtractionLimits:
    """解压预算，超出即按损坏处理"""
    max_entries: int = 5000
    max_entry_bytes: int = 100 * 1024 * 1024
    max_total_bytes: int = 1024 * 1024 * 1024
    max_ratio: int = 200
    time_budget: float = 120.0

    @classmethod
    def from_config(cls, config):
        return cls(
            max_entries=config['ARCHIVE_MAX_ENTRIES'],
            max_entry_bytes=config['ENTRY_MAX_BYTES'],
            max_total_bytes=config['EXTRACT_MAX_TOTAL_BYTES'],
            max_ratio=config['EXTRACT_MAX_RATIO'],
            time_budget=config['EXTRACT_TIME_BUDGET'],
        )


@dataclass
class ExtractedEntry:
    """解压出的单个条目"""
    rel_path: str
    abs_path: Optional[str]
    size: int = 0
    is_corrupt: bool = False
    reason: Optional[str] = None
    file_type: str = FileCategory.OTHER
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    encoding: Optional[str] = None


class FileService:
    """文件服务类"""

    @staticmethod
    def cache_dir_for(assignment_id, content_hash):
        """提交内容的缓存目录：<SUBMISSION_CACHE_DIR>/<作业ID>/<哈希>"""
        return os.path.join(current_app.config['SUBMISSION_CACHE_DIR'], str(assignment_id), content_hash)

    @staticmethod
    def delete_tree(path):
        """删除目录"""
        if path and os.path.isdir(path):
            try:
                shutil.rmtree(path)
                return True
            except OSError as e:
                logger.error(f'[文件] 删除目录失败: {path}: {e}')
                return False
        return True

    @staticmethod
    def validate_file_path(file_path, allowed_base_dir):
        """验证文件路径是否在允许的目录内"""
        abs_file_path = os.path.abspath(file_path)
        abs_base_dir = os.path.abspath(allowed_base_dir)
        try:
            return os.path.commonpath([abs_file_path, abs_base_dir]) == abs_base_dir
        except ValueError:
            return False

    @staticmethod
    def is_junk(name):
        if name.startswith(JUNK_PREFIXES):
            return True
        return os.path.basename(name.rstrip('/')).lower() in JUNK_NAMES

    @staticmethod
    def check_magic(file_path, filename):
        """通过文件魔数检查文件是否损坏，损坏时抛出 CorruptFile"""
        ext = os.path.splitext(filename)[1].lower().lstrip('.')
        signatures = MAGIC_NUMBERS.get(ext)
        if not signatures:
            return
        try:
            with open(file_path, 'rb') as f:
                header = f.read(16)
        except OSError as e:
            raise CorruptFile(f'无法读取文件: {e}', rel_path=filename)
        if not header:
            raise CorruptFile('文件为空', rel_path=filename)
        if not any(header.startswith(sig) for sig in signatures):
            raise CorruptFile(f'文件内容与扩展名 .{ext} 不符', rel_path=filename)

    @staticmethod
    def detect_encoding(file_path, candidates, sample_bytes=1024 * 1024):
        """
        检测文本文件编码（只记录，不转码）

        先检查BOM；含NUL字节视为二进制，返回None；纯ASCII直接返回。
        非ASCII内容先严格解码UTF-8，再用 chardet 猜测编码，置信度足够且能归到某个候选编码时优先采用，
        否则依次按候选编码严格解码。
        """
        try:
            with open(file_path, 'rb') as f:
                sample = f.read(sample_bytes)
        except OSError:
            return None
        if not sample:
            return None
        for bom, encoding in BOMS:
            if sample.startswith(bom):
                return encoding
        if b'\x00' in sample:
            return None
        if all(b < 0x80 for b in sample):
            return 'ascii'

        truncated = len(sample) == sample_bytes
        ordered = [c for c in candidates if _codec_name(c) == 'utf-8']
        guessed = FileService.guess_candidate(sample, candidates)
        if guessed and guessed not in ordered:
            ordered.append(guessed)
        ordered += [c for c in candidates if c not in ordered]

        for encoding in ordered:
            try:
                sample.decode(encoding)
                return encoding
            except UnicodeDecodeError as e:
                # 采样截断在多字节字符中间
                if truncated and e.start >= len(sample) - 4:
                    return encoding
                continue
        return None

    @staticmethod
    def guess_candidate(sample, candidates):
        """用 chardet 猜测编码，并归到候选编码之一；置信度不足或无法归类时返回None"""
        detected = chardet.detect(sample[:CHARDET_SAMPLE_BYTES])
        confidence = detected.get('confidence') or 0
        if not detected.get('encoding') or confidence < CHARDET_MIN_CONFIDENCE:
            logger.debug(f'[编码] chardet 置信度不足: {detected}')
            return None
        name = _codec_name(detected['encoding'])
        name = ENCODING_FAMILIES.get(name, name)
        for candidate in candidates:
            if _codec_name(candidate) == name:
                logger.debug(f'[编码] chardet 检测到 {detected["encoding"]} (置信度: {confidence:.2f})，归为 {candidate}')
                return candidate
        return None

    @staticmethod
    def describe(entry, encoding_candidates):
        """补充条目的类别、MIME、哈希与编码信息"""
        entry.file_type = FileCategory.classify(entry.rel_path)
        entry.mime_type = FileCategory.mime_type(entry.rel_path)
        if entry.is_corrupt or not entry.abs_path:
            return entry
        try:
            FileService.check_magic(entry.abs_path, entry.rel_path)
        except CorruptFile as e:
            entry.is_corrupt = True
            entry.reason = e.message
        try:
            entry.sha256 = sha256_file(entry.abs_path)
        except OSError as e:
            entry.is_corrupt = True
            entry.reason = f'无法读取文件: {e}'
            return entry
        if entry.file_type == FileCategory.TEXT:
            entry.encoding = FileService.detect_encoding(entry.abs_path, encoding_candidates)
        return entry

    @staticmethod
    def _decode_entry_name(info):
        """未设置UTF-8标志的条目名按cp437解码，尝试还原为UTF-8/GBK"""
        name = info.filename
        if info.flag_bits & 0x800:
            return name
        try:
            raw = name.encode('cp437')
        except UnicodeEncodeError:
            return name
        for encoding in ('utf-8', 'gbk'):
            try:
                return raw.decode(encoding)
            except UnicodeDecodeError:
                continue
        return name

    @staticmethod
    def _safe_rel_path(name):
        """规范化条目路径，拒绝绝对路径与上级目录引用"""
        name = name.replace('\\', '/')
        parts = [p for p in name.split('/') if p not in ('', '.')]
        if not parts or name.startswith('/') or any(p == '..' for p in parts) or ':' in parts[0]:
            return None
        return '/'.join(safe_filename(p) for p in parts)

    @staticmethod
    def extract_archive(archive_path, out_dir, limits):
        """
        解压压缩包到缓存目录

        单个条目失败（CRC错误、加密、超限、非法路径）只标记该条目损坏，继续处理其余条目；
        压缩包本身无法打开时抛出 ExtractionFailure。

        Returns:
            list[ExtractedEntry]
        """
        started = time.monotonic()
        deadline = started + limits.time_budget
        try:
            archive = zipfile.ZipFile(archive_path)
        except (zipfile.BadZipFile, OSError, EOFError) as e:
            raise ExtractionFailure(f'压缩包无法读取: {e}', path=archive_path)

        os.makedirs(out_dir, exist_ok=True)
        entries = []
        total_bytes = 0
        with archive:
            infos = [i for i in archive.infolist() if not i.is_dir()]
            for index, info in enumerate(infos):
                name = FileService._decode_entry_name(info)
                if FileService.is_junk(name):
                    continue
                rel_path = FileService._safe_rel_path(name)
                if rel_path is None:
                    entries.append(ExtractedEntry(rel_path=name, abs_path=None, size=info.file_size,
                                                  is_corrupt=True, reason='非法的条目路径'))
                    continue

                reason = None
                if index >= limits.max_entries:
                    reason = f'条目数超过上限 {limits.max_entries}'
                elif time.monotonic() > deadline:
                    reason = '解压超时'
                elif info.file_size > limits.max_entry_bytes:
                    reason = f'条目大小超过上限 {limits.max_entry_bytes} 字节'
                elif total_bytes + info.file_size > limits.max_total_bytes:
                    reason = '解压总大小超过上限'
                elif info.compress_size and info.file_size / info.compress_size > limits.max_ratio:
                    reason = '压缩比异常'
                if reason:
                    entries.append(ExtractedEntry(rel_path=rel_path, abs_path=None, size=info.file_size,
                                                  is_corrupt=True, reason=reason))
                    continue

                target = os.path.join(out_dir, *rel_path.split('/'))
                if not FileService.validate_file_path(target, out_dir):
                    entries.append(ExtractedEntry(rel_path=rel_path, abs_path=None, size=info.file_size,
                                                  is_corrupt=True, reason='非法的条目路径'))
                    continue

                written, reason = FileService._copy_entry(archive, info, target, limits, deadline)
                total_bytes += written
                if reason:
                    entries.append(ExtractedEntry(rel_path=rel_path, abs_path=None, size=info.file_size,
                                                  is_corrupt=True, reason=reason))
                else:
                    entries.append(ExtractedEntry(rel_path=rel_path, abs_path=target, size=written))

        logger.info(f'[解压] {os.path.basename(archive_path)}: {len(entries)} 个条目, '
                    f'{sum(1 for e in entries if e.is_corrupt)} 个损坏, 耗时 {time.monotonic() - started:.2f}s')
        return entries

    @staticmethod
    def _copy_entry(archive, info, target, limits, deadline):
        """流式写出单个条目，按实际字节数计量（不信任头部声明的大小）"""
        os.makedirs(os.path.dirname(target), exist_ok=True)
        written = 0
        try:
            with archive.open(info) as src, open(target, 'wb') as dst:
                while True:
                    chunk = src.read(64 * 1024)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > limits.max_entry_bytes:
                        raise _BudgetExceeded(f'条目大小超过上限 {limits.max_entry_bytes} 字节')
                    if time.monotonic() > deadline:
                        raise _BudgetExceeded('解压超时')
                    dst.write(chunk)
        except _BudgetExceeded as e:
            FileService._discard(target)
            return written, str(e)
        except (zipfile.BadZipFile, RuntimeError, NotImplementedError, OSError, EOFError, zlib.error) as e:
            FileService._discard(target)
            return written, f'条目读取失败: {e}'
        return written, None

    @staticmethod
    def _discard(path):
        try:
            os.remove(path)
        except OSError:
            pass

    @staticmethod
    def ingest_single_file(file_path, out_dir):
        """非压缩包的单个文件，直接复制为唯一条目"""
        os.makedirs(out_dir, exist_ok=True)
        rel_path = safe_filename(os.path.basename(file_path))
        target = os.path.join(out_dir, rel_path)
        try:
            shutil.copyfile(file_path, target)
        except OSError as e:
            raise ExtractionFailure(f'文件无法读取: {e}', path=file_path)
        return [ExtractedEntry(rel_path=rel_path, abs_path=target, size=os.path.getsize(target))]


class _BudgetExceeded(Exception):
    pass
