"""
数据库连接和会话管理

记忆索引假定嵌入式数据库同一时刻只有一个活动连接，
文件型 SQLite 使用单连接池，内存 SQLite 使用 StaticPool。
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from agentmem.core.config import settings


def is_memory_sqlite(database_url: str) -> bool:
    return database_url in {"sqlite://", "sqlite:///:memory:"} or database_url.endswith(":memory:")


def build_engine(database_url: str, echo: bool = False, busy_timeout_ms: int = 30000) -> Engine:
    """创建数据库引擎并注册 SQLite PRAGMA"""
    if not database_url.startswith("sqlite"):
        raise ValueError(f"memory index requires SQLite, got {database_url!r}")

    engine_kwargs = {
        "echo": echo,
        "connect_args": {"check_same_thread": False},
    }
    if is_memory_sqlite(database_url):
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_size"] = 1
        engine_kwargs["max_overflow"] = 0

    engine = create_engine(database_url, **engine_kwargs)

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            if not is_memory_sqlite(database_url):
                cursor.execute("PRAGMA journal_mode=WAL")
        finally:
            cursor.close()

    return engine


engine = build_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    busy_timeout_ms=settings.SQLITE_BUSY_TIMEOUT_MS,
)

# 创建会话工厂
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 声明基类
Base = declarative_base()


def get_db():
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
