from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    BOARD_ADDED = "board_added"
    BOARD_REMOVED = "board_removed"
    TASK_ADDED = "task_added"
    TASK_REMOVED = "task_removed"
    TASK_ADVANCED = "task_advanced"
    TASK_UPDATED = "task_updated"
    COLUMN_LIMITED = "column_limited"
    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"
    OWNER_CHANGED = "owner_changed"


@dataclass(frozen=True)
class ChangeEvent:
    """One committed mutation, with enough data to replay it."""

    kind: EventKind
    board_id: int
    task_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)


Notifier = Callable[[ChangeEvent], None]


def log_only(event: ChangeEvent) -> None:
    """Notifier used when no persistence sink is configured."""
    logger.debug(
        "change %s board=%s task=%s %s",
        event.kind.value,
        event.board_id,
        event.task_id,
        event.payload,
    )
