"""
API v1 路由管理
"""

from fastapi import APIRouter

from agentmem.api.api_v1.endpoints import memory

api_router = APIRouter()

# Register endpoint routers
api_router.include_router(memory.router, prefix="/memory", tags=["Memory Search"])
