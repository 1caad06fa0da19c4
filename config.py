"""GradeHub 配置：存储目录、数据库、导入与分析的资源上限"""
import os


class Config:
    """各环境共用的配置"""
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # 存储目录
    BASE_DIR = os.path.dirname(os.path.abspath(__file__))
    STORAGE_DIR = os.environ.get('STORAGE_DIR', os.path.join(BASE_DIR, 'storage'))
    SUBMISSION_CACHE_DIR = os.environ.get('SUBMISSION_CACHE_DIR', os.path.join(STORAGE_DIR, 'cache'))
    PREVIEW_DIR = os.environ.get('PREVIEW_DIR', os.path.join(STORAGE_DIR, 'previews'))
    # JSON 方式导入时，服务器路径必须位于该目录下
    IMPORT_ROOT = os.environ.get('IMPORT_ROOT', os.path.join(STORAGE_DIR, 'incoming'))

    # SQLite 数据库，WAL 与 busy_timeout 在连接钩子里设置
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        'DATABASE_URL',
        f'sqlite:///{os.path.join(STORAGE_DIR, "data", "gradehub.db")}'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'connect_args': {
            'timeout': 30,
            'check_same_thread': False,
        },
        'echo': False
    }

    # 压缩包导入限制（超限一律按损坏处理，不允许无限阻塞）
    ARCHIVE_MAX_BYTES = 500 * 1024 * 1024
    ARCHIVE_MAX_ENTRIES = 5000
    ENTRY_MAX_BYTES = 100 * 1024 * 1024
    EXTRACT_MAX_TOTAL_BYTES = 1024 * 1024 * 1024
    EXTRACT_MAX_RATIO = 200
    EXTRACT_TIME_BUDGET = 120
    INTAKE_WORKERS = int(os.environ.get('INTAKE_WORKERS', 4))

    # 学生身份匹配
    STUDENT_ID_PATTERN = r'[A-Za-z]?\d{5,10}'
    MATCH_NAME_THRESHOLD = 0.85
    MATCH_AMBIGUITY_MARGIN = 0.03
    METADATA_FILENAMES = ['student_id.txt', 'student.txt', 'id.txt']

    # 文本编码检测
    TEXT_ENCODING_CANDIDATES = ['utf-8', 'gb18030', 'cp1252']

    # 工作簿分析
    WORKBOOK_MAX_BYTES = 50 * 1024 * 1024
    WORKBOOK_MAX_CELLS = 500000
    WORKBOOK_TIME_BUDGET = 60
    ANALYSIS_WORKERS = int(os.environ.get('ANALYSIS_WORKERS', 2))
    ANALYSIS_TASK_TTL = 30 * 60

    # 预览渲染
    PREVIEW_COMMAND = os.environ.get('PREVIEW_COMMAND', 'soffice')
    PREVIEW_TIMEOUT = 120

    # 定时任务
    SCHEDULER_ENABLED = True
    SCHEDULER_API_ENABLED = False

    # 列表接口默认每页条数
    DEFAULT_PER_PAGE = 50


class DevelopmentConfig(Config):
    """本地开发"""
    DEBUG = True
    TESTING = False
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """生产环境：日志只保留警告以上，分析线程池按环境变量放大"""
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'WARNING')
    ANALYSIS_WORKERS = int(os.environ.get('ANALYSIS_WORKERS', 4))


class TestingConfig(Config):
    """测试：关闭定时任务，缩小线程池"""
    TESTING = True
    SCHEDULER_ENABLED = False
    INTAKE_WORKERS = 2
    ANALYSIS_WORKERS = 1


# create_app 按名称选择配置
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
