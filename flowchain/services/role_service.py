"""Role Service - Which roles an actor currently holds"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
import httpx

from ..domain.errors import RoleServiceError
from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RoleService(ABC):
    """Role/Permission collaborator used to authorize decisions"""

    @abstractmethod
    def get_actor_roles(self, actor_id: str) -> List[str]:
        """Role ids ``actor_id`` holds right now"""


class StaticRoleService(RoleService):
    """Roles from a fixed actor -> roles mapping (tests, token-carried roles)"""

    def __init__(self, mapping: Optional[Dict[str, Iterable[str]]] = None):
        self._mapping = {actor: list(roles) for actor, roles in (mapping or {}).items()}

    def get_actor_roles(self, actor_id: str) -> List[str]:
        return list(self._mapping.get(actor_id, []))

    def grant(self, actor_id: str, *role_ids: str) -> None:
        self._mapping.setdefault(actor_id, []).extend(role_ids)


class HttpRoleService(RoleService):
    """
    Role service reached over HTTP

    GET {base_url}/actors/{actor_id}/roles answers either a JSON list of
    role ids or {"roles": [...]}. An unknown actor (404) holds no roles.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = (base_url or settings.role_service_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.role_service_timeout_seconds
        self._transport = transport

    def get_actor_roles(self, actor_id: str) -> List[str]:
        url = f"{self.base_url}/actors/{actor_id}/roles"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Role service call failed: {e}", extra={"actor_id": actor_id})
            raise RoleServiceError(
                "Role service is unavailable", details={"actor_id": actor_id, "reason": str(e)}
            )

        if response.status_code == 404:
            logger.info(f"Role service does not know actor {actor_id}", extra={"actor_id": actor_id})
            return []

        if response.status_code != 200:
            logger.error(
                f"Role service error: {response.status_code} - {response.text}",
                extra={"actor_id": actor_id}
            )
            raise RoleServiceError(
                f"Role service answered {response.status_code}",
                details={"actor_id": actor_id, "status_code": response.status_code}
            )

        try:
            data = response.json()
        except ValueError:
            raise RoleServiceError("Role service returned invalid JSON", details={"actor_id": actor_id})

        roles = data.get("roles", []) if isinstance(data, dict) else data
        if not isinstance(roles, list):
            raise RoleServiceError("Role service returned an unexpected payload", details={"actor_id": actor_id})
        return [str(r) for r in roles]
