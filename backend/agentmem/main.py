"""
Agent Memory Search - FastAPI 应用入口
为 AI bridge 的 agent 提供混合（向量 + 关键词）记忆检索服务
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentmem.api.api_v1.api import api_router
from agentmem.core.config import settings
from agentmem.core.logging import configure_logging
from agentmem.db.database import engine
from agentmem.db.init_db import init_db
from agentmem.services.memory.registry import MemorySearchRegistry

# 配置日志
configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时执行
    logger.info("启动 Agent Memory Search...")

    # 初始化数据库
    try:
        await init_db(engine)
        logger.info("数据库初始化完成")
    except Exception as e:
        logger.error("数据库初始化失败", error=str(e))
        raise

    app.state.memory_registry = MemorySearchRegistry(engine, settings)

    yield

    # 关闭时执行
    logger.info("关闭 Agent Memory Search...")
    await app.state.memory_registry.close()


def create_application() -> FastAPI:
    """创建 FastAPI 应用实例"""

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="基于 FastAPI + SQLite (FTS5 / sqlite-vec) 的 agent 记忆检索服务",
        version="1.0.0",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
        lifespan=lifespan,
    )

    # CORS中间件
    if settings.DEBUG:
        allow_origins = ["*"]
    else:
        allow_origins = settings.get_allowed_origins()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册路由
    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/")
    async def root():
        """根路径健康检查"""
        return {
            "message": "Agent Memory Search API",
            "version": "1.0.0",
            "docs": f"{settings.API_V1_STR}/docs",
        }

    @app.get("/health")
    async def health_check():
        """健康检查接口"""
        return {"status": "healthy", "service": "agentmem"}

    return app


# 创建应用实例
app = create_application()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agentmem.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG, log_level="info"
    )
