"""Flask扩展初始化"""
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from sqlalchemy import event
from sqlalchemy.engine import Engine

# 初始化扩展（不绑定app）
db = SQLAlchemy()
login_manager = LoginManager()


def init_extensions(app):
    """初始化所有扩展"""
    db.init_app(app)
    login_manager.init_app(app)

    # 请求结束后自动关闭数据库会话
    @app.teardown_appcontext
    def shutdown_session(exception=None):
        db.session.remove()


@event.listens_for(Engine, 'connect')
def _sqlite_pragmas(dbapi_connection, connection_record):
    """SQLite连接：开启外键级联与WAL模式，读写可以并发进行"""
    module = type(dbapi_connection).__module__
    if not module.startswith('sqlite3'):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.execute('PRAGMA journal_mode=WAL')
    cursor.execute('PRAGMA synchronous=NORMAL')
    cursor.execute('PRAGMA busy_timeout=30000')
    cursor.close()
