"""
Memory search API endpoints (scoped by bridge, login and agent)
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError

from agentmem.core.dependencies import get_memory_registry, get_tenant
from agentmem.schemas.memory import (
    MemoryFileRead,
    MemoryFileResponse,
    MemoryFileWrite,
    MemorySearchHit,
    MemorySearchRequest,
    MemorySearchResponse,
    MemoryStatusResponse,
    MemorySyncRequest,
    MemorySyncResponse,
)
from agentmem.services.memory.errors import (
    InvalidMemoryPathError,
    MemoryFileNotFoundError,
    MemorySearchError,
    MemoryUnavailableError,
)
from agentmem.services.memory.manager import MemorySearchManager
from agentmem.services.memory.registry import MemorySearchRegistry
from agentmem.services.memory.sources import DatabaseContentLister, is_markdown
from agentmem.services.memory.types import SearchFilters, Tenant

router = APIRouter()
logger = structlog.get_logger(__name__)


def _manager(
    registry: MemorySearchRegistry,
    tenant: Tenant,
    overrides: Optional[Dict[str, Any]] = None,
) -> MemorySearchManager:
    try:
        return registry.get_memory_search_manager(tenant, overrides=overrides)
    except MemoryUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/{bridge_id}/{login_id}/{agent_id}/sync", response_model=MemorySyncResponse)
async def sync_memory(
    request: MemorySyncRequest,
    tenant: Tenant = Depends(get_tenant),
    registry: MemorySearchRegistry = Depends(get_memory_registry),
):
    """Run a sync pass (incremental unless forced or the index fingerprint changed)."""
    manager = _manager(registry, tenant, request.overrides)
    try:
        await manager.sync(session_key=request.session_key, force=request.force)
    except (MemorySearchError, SQLAlchemyError) as e:
        logger.error("Memory sync failed", tenant=tenant.key, error=str(e))
        raise HTTPException(status_code=500, detail=f"Memory sync failed: {e}")

    current = manager.status()
    return MemorySyncResponse(
        generation=current.index_generation,
        chunks=current.chunks,
        dirty=current.dirty,
    )


@router.post("/{bridge_id}/{login_id}/{agent_id}/search", response_model=MemorySearchResponse)
async def search_memory(
    request: MemorySearchRequest,
    tenant: Tenant = Depends(get_tenant),
    registry: MemorySearchRegistry = Depends(get_memory_registry),
):
    manager = _manager(registry, tenant, request.overrides)
    filters = SearchFilters(
        sources=request.sources,
        path_prefix=request.path_prefix,
        session_key=request.session_key,
    )
    try:
        results = await manager.search(
            request.query,
            query_vector=request.query_vector,
            limit=request.max_results,
            filters=filters,
        )
    except (MemorySearchError, SQLAlchemyError) as e:
        logger.error("Memory search failed", tenant=tenant.key, error=str(e))
        raise HTTPException(status_code=500, detail=f"Memory search failed: {e}")

    return MemorySearchResponse(
        vector=[MemorySearchHit.model_validate(hit) for hit in results.vector],
        keyword=[MemorySearchHit.model_validate(hit) for hit in results.keyword],
        vector_weight=results.vector_weight,
        text_weight=results.text_weight,
        candidate_multiplier=results.candidate_multiplier,
        min_score=results.min_score,
        max_results=results.max_results,
    )


@router.get("/{bridge_id}/{login_id}/{agent_id}/status", response_model=MemoryStatusResponse)
async def memory_status(
    tenant: Tenant = Depends(get_tenant),
    registry: MemorySearchRegistry = Depends(get_memory_registry),
):
    manager = _manager(registry, tenant)
    return MemoryStatusResponse.model_validate(manager.status())


@router.get("/{bridge_id}/{login_id}/{agent_id}/files/recent", response_model=List[MemorySearchHit])
async def recent_memory_files(
    sources: Optional[List[str]] = Query(None),
    path_prefix: str = "",
    limit: Optional[int] = Query(None, ge=1, le=200),
    tenant: Tenant = Depends(get_tenant),
    registry: MemorySearchRegistry = Depends(get_memory_registry),
):
    manager = _manager(registry, tenant)
    hits = manager.list_recent_files(sources=sources, path_prefix=path_prefix, limit=limit)
    return [MemorySearchHit.model_validate(hit) for hit in hits]


@router.get("/{bridge_id}/{login_id}/{agent_id}/files", response_model=MemoryFileRead)
async def read_memory_file(
    path: str,
    from_line: Optional[int] = Query(None, ge=1),
    lines: Optional[int] = Query(None, ge=1),
    tenant: Tenant = Depends(get_tenant),
    registry: MemorySearchRegistry = Depends(get_memory_registry),
):
    manager = _manager(registry, tenant)
    try:
        return MemoryFileRead(**manager.read_file(path, from_line=from_line, lines=lines))
    except InvalidMemoryPathError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MemoryFileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{bridge_id}/{login_id}/{agent_id}/files", response_model=MemoryFileResponse)
async def write_memory_file(
    request: MemoryFileWrite,
    tenant: Tenant = Depends(get_tenant),
    registry: MemorySearchRegistry = Depends(get_memory_registry),
):
    """Store a markdown note and mark the index dirty."""
    if not is_markdown(request.path):
        raise HTTPException(status_code=400, detail="Only markdown (.md) files can be stored")
    if request.source is not None and request.source not in ("memory", "workspace"):
        raise HTTPException(status_code=400, detail="source must be memory or workspace")

    manager = _manager(registry, tenant)
    if not isinstance(manager.lister, DatabaseContentLister):
        raise HTTPException(status_code=409, detail="Memory content is managed by an external store")

    with manager.session_scope() as db:
        row = manager.lister.write(db, tenant, request.path, request.content, source=request.source)
        response = MemoryFileResponse(
            path=row.path,
            source=row.source,
            hash=row.hash,
            updated_at=row.updated_at,
        )

    manager.notify_file_changed(response.path)
    logger.info("Memory file saved", tenant=tenant.key, path=response.path)
    return response
