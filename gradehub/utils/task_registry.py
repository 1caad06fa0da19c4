"""后台分析任务登记表"""
import time
import uuid
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Optional

logger = logging.getLogger(__name__)


class TaskStatus:
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    ERROR = 'error'

    FINISHED = (COMPLETED, ERROR)


@dataclass
class AnalysisTask:
    """异步分析任务句柄"""
    file_id: int
    kind: str
    content_hash: Optional[str] = None
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = TaskStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    future: Any = field(default=None, repr=False)

    @property
    def finished(self):
        return self.status in TaskStatus.FINISHED

    def to_dict(self, include_result=True):
        data = {
            'task_id': self.task_id,
            'file_id': self.file_id,
            'kind': self.kind,
            'content_hash': self.content_hash,
            'status': self.status,
            'error': self.error,
            'error_code': self.error_code,
        }
        if include_result:
            data['result'] = self.result
        return data


class TaskRegistry:
    """进程内的任务登记表，多个工作线程共享"""

    def __init__(self):
        self.lock = Lock()
        self._tasks = {}

    def add(self, task):
        with self.lock:
            self._tasks[task.task_id] = task
        return task

    def get(self, task_id):
        with self.lock:
            return self._tasks.get(task_id)

    def update(self, task_id, **changes):
        with self.lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            for key, value in changes.items():
                setattr(task, key, value)
            task.updated_at = time.time()
            return task

    def purge_finished(self, ttl):
        """清理结束超过 ttl 秒的任务，返回清理数量"""
        cutoff = time.time() - ttl
        with self.lock:
            expired = [task_id for task_id, task in self._tasks.items()
                       if task.finished and task.updated_at < cutoff]
            for task_id in expired:
                del self._tasks[task_id]
        if expired:
            logger.info(f'[任务登记] 已清理 {len(expired)} 个过期任务')
        return len(expired)

    def __len__(self):
        with self.lock:
            return len(self._tasks)
