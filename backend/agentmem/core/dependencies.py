"""
依赖注入相关功能
"""

from fastapi import HTTPException, Request, status

from agentmem.services.memory.registry import MemorySearchRegistry
from agentmem.services.memory.types import Tenant


def get_memory_registry(request: Request) -> MemorySearchRegistry:
    """获取应用级的记忆检索管理器注册表"""
    registry = getattr(request.app.state, "memory_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="memory search unavailable",
        )
    return registry


def get_tenant(bridge_id: str, login_id: str, agent_id: str) -> Tenant:
    """从路径参数解析租户；agent_id 为空时使用 main"""
    bridge_id = bridge_id.strip()
    login_id = login_id.strip()
    if not bridge_id or not login_id:
        raise HTTPException(status_code=400, detail="bridge_id and login_id are required")
    return Tenant(bridge_id=bridge_id, login_id=login_id, agent_id=agent_id.strip() or "main")
