"""
Pytest Configuration and Fixtures

Every test gets its own in-memory MongoDB (mongomock) with the
application indexes, so the active-instance and projection constraints
behave as in production.
"""

import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient

from flowchain.config.settings import settings
from flowchain.engine.runtime import WorkflowRuntime
from flowchain.repositories.mongo_client import create_indexes
from flowchain.repositories.definition_repo import DefinitionRepository
from flowchain.repositories.instance_repo import InstanceRepository
from flowchain.repositories.binding_repo import BindingRepository
from flowchain.services.definition_service import DefinitionService
from flowchain.services.role_service import StaticRoleService
from flowchain.api.deps import get_database_dep

from .helpers import actor

# Each role is held by the actor "u-<role>"
ROLES = [
    "editor", "legal", "brand", "producer", "director",
    "r1", "r2", "r3", "r4",
]


@pytest.fixture
def db():
    """Fresh in-memory database with the application indexes"""
    client = mongomock.MongoClient(tz_aware=True)
    database = client["flowchain_test"]
    create_indexes(database)
    yield database
    client.close()


@pytest.fixture
def definition_repo(db):
    return DefinitionRepository(db)


@pytest.fixture
def instance_repo(db):
    return InstanceRepository(db)


@pytest.fixture
def binding_repo(db):
    return BindingRepository(db)


@pytest.fixture
def role_service():
    return StaticRoleService({actor(role): [role] for role in ROLES})


@pytest.fixture
def runtime(definition_repo, instance_repo, role_service):
    return WorkflowRuntime(
        definition_repo=definition_repo,
        instance_repo=instance_repo,
        role_service=role_service,
        max_stage_visits=10,
        max_write_retries=3
    )


@pytest.fixture
def definition_service(definition_repo):
    return DefinitionService(repo=definition_repo)


@pytest.fixture
def publish(definition_service):
    """Publish a definition; a new flow chain unless flow_chain_id is given"""
    def _publish(definition, flow_chain_id=None):
        if flow_chain_id:
            return definition_service.publish(flow_chain_id, definition, actor_id="u-admin")
        return definition_service.create_flow_chain(definition, actor_id="u-admin")
    return _publish


@pytest.fixture
def client(db):
    """API client bound to the test database (lifespan is not run)"""
    from flowchain.main import app

    app.dependency_overrides[get_database_dep] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Authorization header for an actor carrying the given roles"""
    def _headers(actor_id="u-admin", roles=()):
        token = jwt.encode(
            {"sub": actor_id, "name": actor_id, "roles": list(roles)},
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers
