"""应用工厂"""
import os
import logging
from flask import Flask, jsonify, request
from config import config
from gradehub.extensions import db, login_manager, init_extensions
from gradehub.errors import GradeHubError
from gradehub.models import TA


def create_app(config_name='default', test_config=None):
    """创建Flask应用实例"""
    app = Flask(__name__)

    # 加载配置
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)
    app.logger.setLevel(getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO))

    # 确保必要的目录存在
    os.makedirs(os.path.join(app.config['STORAGE_DIR'], 'data'), exist_ok=True)
    os.makedirs(app.config['SUBMISSION_CACHE_DIR'], exist_ok=True)
    os.makedirs(app.config['PREVIEW_DIR'], exist_ok=True)

    # 初始化扩展
    init_extensions(app)

    # 操作者通过请求头 X-TA-Id 识别
    @login_manager.request_loader
    def load_ta_from_request(req):
        ta_id = req.headers.get('X-TA-Id', type=int)
        if ta_id is None:
            return None
        ta = db.session.get(TA, ta_id)
        if ta is None or not ta.is_active:
            return None
        return ta

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'code': 'unauthorized', 'message': '请在请求头 X-TA-Id 中提供有效的助教ID'}), 401

    register_error_handlers(app)
    register_blueprints(app)
    init_analysis(app)
    init_scheduler(app)

    return app


def register_error_handlers(app):
    """业务错误统一转换为JSON响应"""
    @app.errorhandler(GradeHubError)
    def handle_gradehub_error(error):
        level = logging.ERROR if error.http_status >= 500 else logging.INFO
        app.logger.log(level, f'[错误] {request.method} {request.path}: {error.code} {error.message}')
        return jsonify(error.to_dict()), error.http_status


def register_blueprints(app):
    """注册所有蓝图"""
    # 延迟导入避免循环依赖
    from gradehub.routes import submission, grading, workbook, logs

    app.register_blueprint(submission.bp)
    app.register_blueprint(grading.bp)
    app.register_blueprint(workbook.bp)
    app.register_blueprint(logs.bp)


def init_analysis(app):
    """初始化后台分析线程池"""
    from gradehub.services.analysis_service import init_analysis as _init_analysis
    _init_analysis(app)


def init_scheduler(app):
    """初始化定时任务调度器"""
    from gradehub.services.scheduler_service import init_scheduler as _init_scheduler
    _init_scheduler(app)
