"""定时任务服务 - 清理已结束的分析任务"""
import os
import sys
import logging
from flask_apscheduler import APScheduler

logger = logging.getLogger(__name__)

scheduler = APScheduler()


def purge_analysis_tasks(app):
    """清理超过保留时间的已结束任务句柄"""
    registry = app.extensions.get('analysis_tasks')
    if registry is None:
        return 0
    return registry.purge_finished(app.config['ANALYSIS_TASK_TTL'])


def init_scheduler(app):
    """初始化定时任务调度器（任务登记表在进程内，每个worker各自清理）"""
    if not app.config.get('SCHEDULER_ENABLED', True):
        return

    # 工具脚本不启动调度器
    script_name = os.path.basename(sys.argv[0] if sys.argv else '')
    if script_name in ('init_db.py',):
        return

    if scheduler.running:
        return

    app.config['SCHEDULER_API_ENABLED'] = False
    scheduler.init_app(app)

    interval = max(60, app.config['ANALYSIS_TASK_TTL'] // 6)

    @scheduler.task('interval', id='purge_analysis_tasks', seconds=interval, misfire_grace_time=900)
    def scheduled_purge():
        try:
            purge_analysis_tasks(app)
        except Exception:
            logger.exception('[定时任务] 清理分析任务失败')

    scheduler.start()
    logger.info(f'[定时任务] Worker {os.getpid()}: 调度器已启动，每 {interval} 秒清理一次分析任务')
