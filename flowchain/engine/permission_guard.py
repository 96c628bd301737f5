"""Permission Guard - Authorization for decisions"""
from typing import Iterable

from ..domain.models import Step
from ..domain.errors import Unauthorized
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PermissionGuard:
    """
    Decide whether an actor may vote for a role on a step

    Rules:
    - The role must be one of the step's assigned roles
    - The actor must currently hold that role (per the role service)
    """

    def ensure_can_decide(
        self,
        step: Step,
        role_id: str,
        actor_id: str,
        actor_roles: Iterable[str]
    ) -> None:
        """
        Raises:
            Unauthorized: If the role is not assigned to the step or the
                actor does not hold it
        """
        actor_roles = set(actor_roles)
        if not step.has_role(role_id):
            logger.warning(
                f"Role {role_id} is not assigned to step {step.step_id}",
                extra={"actor_id": actor_id, "role_id": role_id, "step_id": step.step_id}
            )
            raise Unauthorized(
                f"Role {role_id} is not assigned to step {step.step_id}",
                details={"step_id": step.step_id, "role_id": role_id, "assigned_roles": step.role_ids}
            )
        if role_id not in actor_roles:
            logger.warning(
                f"Actor {actor_id} does not hold role {role_id}",
                extra={"actor_id": actor_id, "role_id": role_id, "step_id": step.step_id}
            )
            raise Unauthorized(
                f"Actor {actor_id} does not hold role {role_id}",
                details={"step_id": step.step_id, "role_id": role_id, "actor_id": actor_id}
            )
