"""
结构化日志配置
使用 structlog 提供结构化日志记录
"""

import logging
from typing import Optional

import structlog
from structlog.stdlib import LoggerFactory

from agentmem.core.config import settings


def configure_logging(level: Optional[str] = None):
    """配置结构化日志"""

    log_level = (level or settings.LOG_LEVEL).upper()

    # 配置标准库日志级别
    logging.basicConfig(level=getattr(logging, log_level), format="%(message)s")

    # httpx 的请求日志过于嘈杂
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
