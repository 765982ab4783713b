"""
初始数据脚本

在数据库迁移完成后执行，本地环境写入演示目录（见 app.core.db.init_db）。

运行方式：
    python -m app.initial_data
"""
import logging  # 日志记录

from sqlmodel import Session  # 数据库会话

from app.core.db import engine, init_db  # 数据库引擎和初始化函数

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init() -> None:
    with Session(engine) as session:
        init_db(session)


def main() -> None:
    logger.info("Creating initial data")
    init()
    logger.info("Initial data created")


if __name__ == "__main__":  # pragma: no cover
    main()
