"""
数据库初始化
"""

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine

from agentmem.db.database import engine as default_engine
from agentmem.db.models import Base

logger = structlog.get_logger(__name__)


async def init_db(engine: Engine = None):
    """
    初始化数据库表结构
    """
    engine = engine or default_engine
    try:
        logger.info("开始初始化数据库...")

        # 创建所有表
        Base.metadata.create_all(bind=engine)
        logger.info("数据库表创建完成")

        # 补齐历史表字段（向后兼容旧 SQLite 文件）
        _safe_migrate_meta_table(engine)

        logger.info("数据库初始化完成")
    except Exception as e:
        logger.error("数据库初始化失败", error=str(e))
        raise


def _safe_migrate_meta_table(engine: Engine):
    """补齐 ai_memory_meta 表的 index_generation 字段。

    早期版本的 meta 表没有记录当前 generation，缺失时由最新分片的 id 前缀推导。
    """
    with engine.begin() as conn:
        cols = conn.execute(text("PRAGMA table_info('ai_memory_meta')")).fetchall()
        existing = {c[1] for c in cols}  # name at index 1
        if existing and "index_generation" not in existing:
            sql = "ALTER TABLE ai_memory_meta ADD COLUMN index_generation TEXT NOT NULL DEFAULT ''"
            logger.info(f"迁移 ai_memory_meta 表：执行 {sql}")
            conn.execute(text(sql))
