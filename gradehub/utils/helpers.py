"""辅助函数"""
import re
import hashlib
from datetime import datetime, timezone


def utcnow():
    """当前UTC时间（不带时区信息，与数据库字段保持一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(dt):
    """时间转ISO字符串，空值返回None"""
    if dt is None:
        return None
    return dt.isoformat()


def safe_filename(filename):
    """创建支持中文的安全文件名"""
    if not filename:
        return 'untitled'

    safe_name = re.sub(r'[<>:"/\\|?*]', '', filename)
    safe_name = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', safe_name)
    safe_name = safe_name.strip()

    if not safe_name:
        return 'untitled'

    if len(safe_name.encode('utf-8')) > 200:
        truncated = safe_name[:100]
        while len(truncated.encode('utf-8')) > 200 and len(truncated) > 0:
            truncated = truncated[:-1]
        safe_name = truncated

    return safe_name


def sha256_file(file_path, chunk_size=1024 * 1024):
    """分块计算文件的SHA-256"""
    hasher = hashlib.sha256()
    with open(file_path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()
