"""FastAPI dependencies wiring requests to the engine and its services.

Everything is built per request on top of ``get_database_dep``, which tests
override with an in-memory database.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pymongo.database import Database

from ..config.settings import settings
from ..domain.models import ActorContext
from ..domain.errors import AuthenticationError
from ..engine.runtime import WorkflowRuntime
from ..repositories.mongo_client import get_database
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.instance_repo import InstanceRepository
from ..repositories.binding_repo import BindingRepository
from ..services.assignment_service import AssignmentService
from ..services.definition_service import DefinitionService
from ..services.reporting_service import ReportingService
from ..services.role_service import RoleService, HttpRoleService, StaticRoleService
from ..utils.jwt import get_current_user
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """The caller's correlation id, or a fresh one; also bound to the logging context"""
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


def _unauthenticated(error: AuthenticationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error.to_dict(),
        headers={"WWW-Authenticate": "Bearer"}
    )


async def get_current_user_dep(authorization: Optional[str] = Header(None)) -> ActorContext:
    try:
        return get_current_user(authorization)
    except AuthenticationError as e:
        raise _unauthenticated(e)


def get_database_dep() -> Database:
    """Application database (overridden in tests)"""
    return get_database()


def get_role_service_dep(actor: ActorContext = Depends(get_current_user_dep)) -> RoleService:
    """Remote role service when configured, else the roles carried in the token"""
    if settings.role_service_url:
        return HttpRoleService()
    return StaticRoleService({actor.actor_id: actor.roles})


def get_runtime_dep(
    db: Database = Depends(get_database_dep),
    role_service: RoleService = Depends(get_role_service_dep)
) -> WorkflowRuntime:
    return WorkflowRuntime(
        definition_repo=DefinitionRepository(db),
        instance_repo=InstanceRepository(db),
        role_service=role_service
    )


def get_definition_service_dep(db: Database = Depends(get_database_dep)) -> DefinitionService:
    return DefinitionService(repo=DefinitionRepository(db))


def get_assignment_service_dep(
    db: Database = Depends(get_database_dep),
    runtime: WorkflowRuntime = Depends(get_runtime_dep)
) -> AssignmentService:
    return AssignmentService(runtime, binding_repo=BindingRepository(db))


def get_reporting_service_dep(db: Database = Depends(get_database_dep)) -> ReportingService:
    return ReportingService(InstanceRepository(db))
