"""初始化数据库：建表，并创建默认课程与管理员助教"""
import sys
import os

# 添加项目根目录到Python路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gradehub import create_app
from gradehub.extensions import db
from gradehub.models import Course, TA, CourseTA, CourseRole


def init_db(config_name=None):
    app = create_app(config_name or os.getenv('FLASK_ENV', 'development'))

    with app.app_context():
        db.create_all()
        print("✅ 数据表已创建")

        if TA.query.count() > 0:
            print("ℹ️  已存在助教账号，跳过初始化数据")
            return

        course = Course(name=os.getenv('GRADEHUB_COURSE', '默认课程'), term=os.getenv('GRADEHUB_TERM', '2026秋'))
        admin = TA(display_name=os.getenv('GRADEHUB_ADMIN', '管理员'), initials='ADM', is_active=True)
        db.session.add_all([course, admin])
        db.session.flush()
        db.session.add(CourseTA(course_id=course.id, ta_id=admin.id, role=CourseRole.ADMIN))
        db.session.commit()
        print(f"✅ 已创建课程 {course.name}（ID={course.id}）与管理员助教（ID={admin.id}）")


if __name__ == '__main__':
    init_db(sys.argv[1] if len(sys.argv) > 1 else None)
