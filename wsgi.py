"""GradeHub 的 WSGI 入口，供 Gunicorn 等服务器加载 app"""
import os
import sys

# 确保项目根目录在Python路径中
sys.path.insert(0, os.path.dirname(__file__))

from gradehub import create_app

# 创建应用实例
config_name = os.getenv('FLASK_ENV', 'production')
app = create_app(config_name)

if __name__ == '__main__':
    # 本地调试用，生产环境由 WSGI 服务器启动
    app.run()
