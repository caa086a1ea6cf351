from dataclasses import dataclass, field
from typing import Any, NamedTuple

from citypulse.services.notifications import NotificationEvent


class SideEffect(NamedTuple):
    """An outbound call to run after commit, by background task name."""

    task: str
    kwargs: dict


@dataclass
class Outcome:
    """Result of one state change: the entity plus its post-commit work."""

    entity: Any
    events: list[NotificationEvent] = field(default_factory=list)
    effects: list[SideEffect] = field(default_factory=list)
