"""Resolved caller identity and capability checks."""

import logging
from dataclasses import dataclass

from citypulse.errors import Forbidden
from citypulse.schemas import UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a workflow operation."""

    id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def require_role(actor: Actor, *roles: UserRole) -> None:
    """Raise Forbidden unless the actor holds one of ``roles``."""
    if actor.role not in roles:
        logger.info(
            "Capability check failed",
            extra={"actor_id": actor.id, "role": actor.role.value},
        )
        allowed = ", ".join(role.value for role in roles)
        raise Forbidden(f"This action requires one of the roles: {allowed}")
