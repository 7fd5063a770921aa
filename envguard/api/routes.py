"""
EnvGuard: API Routes
Environments, variables (with on-demand decryption), and the audit log.
Core services are taken from app.state, set up by the server lifespan.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from envguard.audit.audit_recorder import AuditLogEntry, AuditRecorder
from envguard.auth.identity import CallerIdentity, get_caller
from envguard.environments.environment_registry import Environment, EnvironmentRegistry
from envguard.variables.variable_store import Variable, VariableStore

logger = logging.getLogger(__name__)


# ── Request Models ────────────────────────────────────────────────

class CreateEnvironmentRequest(BaseModel):
    name: str = ""
    description: str = ""


class SetVariableRequest(BaseModel):
    key: str = ""
    value: Optional[str] = None
    is_secret: bool = False
    tags: str = ""
    description: str = ""


# ── Service accessors ────────────────────────────────────────────

def get_registry(request: Request) -> EnvironmentRegistry:
    return request.app.state.registry


def get_store(request: Request) -> VariableStore:
    return request.app.state.store


def get_recorder(request: Request) -> AuditRecorder:
    return request.app.state.recorder


router = APIRouter(prefix="/api")


# ══════════════════════════════════════════════════════════════
# ENVIRONMENTS
# ══════════════════════════════════════════════════════════════

@router.get("/environments", response_model=List[Environment], tags=["Environments"])
async def list_environments(registry: EnvironmentRegistry = Depends(get_registry)):
    """List environments ordered by name."""
    return await registry.list()


@router.post("/environments", status_code=201, response_model=Environment, tags=["Environments"])
async def create_environment(
    req: CreateEnvironmentRequest,
    caller: CallerIdentity = Depends(get_caller),
    registry: EnvironmentRegistry = Depends(get_registry),
):
    """Create an environment. Names are unique."""
    return await registry.create(req.name, req.description, caller=caller)


@router.delete("/environments/{env}", status_code=204, tags=["Environments"])
async def delete_environment(
    env: str,
    caller: CallerIdentity = Depends(get_caller),
    registry: EnvironmentRegistry = Depends(get_registry),
):
    """Delete an empty environment."""
    await registry.delete(env, caller=caller)
    return Response(status_code=204)


# ══════════════════════════════════════════════════════════════
# VARIABLES
# ══════════════════════════════════════════════════════════════

@router.get("/environments/{env}/variables", response_model=List[Variable], tags=["Variables"])
async def list_variables(
    env: str,
    registry: EnvironmentRegistry = Depends(get_registry),
    store: VariableStore = Depends(get_store),
):
    """List variables ordered by key. Secret values are returned encrypted."""
    environment = await registry.resolve(env)
    return await store.list(environment.id)


@router.get("/environments/{env}/variables/{key}", response_model=Variable, tags=["Variables"])
async def get_variable(
    env: str,
    key: str,
    decrypt: bool = Query(default=False),
    registry: EnvironmentRegistry = Depends(get_registry),
    store: VariableStore = Depends(get_store),
):
    """Get a variable; pass decrypt=true to receive a secret's plaintext."""
    environment = await registry.resolve(env)
    if decrypt:
        return await store.get_decrypted(environment.id, key)
    return await store.get(environment.id, key)


@router.post("/environments/{env}/variables", response_model=Variable, tags=["Variables"])
async def set_variable(
    env: str,
    req: SetVariableRequest,
    caller: CallerIdentity = Depends(get_caller),
    registry: EnvironmentRegistry = Depends(get_registry),
    store: VariableStore = Depends(get_store),
):
    """Create or update a variable. 201 when created, 200 when updated."""
    environment = await registry.resolve(env)
    variable, created = await store.set(
        environment.id, req.key, req.value, req.is_secret,
        req.tags, req.description, caller=caller,
    )
    return JSONResponse(
        status_code=201 if created else 200,
        content=variable.model_dump(mode="json"),
    )


@router.delete("/environments/{env}/variables/{key}", status_code=204, tags=["Variables"])
async def delete_variable(
    env: str,
    key: str,
    caller: CallerIdentity = Depends(get_caller),
    registry: EnvironmentRegistry = Depends(get_registry),
    store: VariableStore = Depends(get_store),
):
    """Delete a variable."""
    environment = await registry.resolve(env)
    await store.delete(environment.id, key, caller=caller)
    return Response(status_code=204)


# ══════════════════════════════════════════════════════════════
# AUDIT
# ══════════════════════════════════════════════════════════════

@router.get("/audit", response_model=List[AuditLogEntry], tags=["Audit"])
async def list_audit_logs(
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    limit: Optional[str] = None,
    recorder: AuditRecorder = Depends(get_recorder),
):
    """Audit entries newest first. An invalid limit falls back to the default."""
    return await recorder.query(action=action, entity_type=entity_type, limit=limit)
