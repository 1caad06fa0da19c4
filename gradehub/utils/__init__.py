"""工具函数包"""
from gradehub.utils.helpers import utcnow, isoformat, safe_filename, sha256_file

__all__ = ['utcnow', 'isoformat', 'safe_filename', 'sha256_file']
