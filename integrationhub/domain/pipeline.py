from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


ErrorHandling = Literal["stop_on_first_error", "continue"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventJobPayload(BaseModel):
    # Producer contract for the event queue; event_id is unique per event.
    event_id: str
    tenant_id: str
    event_type: str
    source_type: str
    source_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utc_now)

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class ActionSpec:
    id: str
    trigger_id: str
    action_type: str
    position: int = 0
    config: dict[str, Any] = field(default_factory=dict)
    is_critical: bool = False
    timeout_ms: int = 30000

    @classmethod
    def from_row(cls, row: Any) -> "ActionSpec":
        return cls(
            id=row.id,
            trigger_id=row.trigger_id,
            action_type=row.action_type,
            position=row.position,
            config=copy.deepcopy(row.config or {}),
            is_critical=bool(row.is_critical),
            timeout_ms=int(row.timeout_ms or 30000),
        )

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> "ActionSpec":
        return cls(
            id=snapshot["id"],
            trigger_id=snapshot["trigger_id"],
            action_type=snapshot["action_type"],
            position=int(snapshot.get("position", 0)),
            config=copy.deepcopy(snapshot.get("config") or {}),
            is_critical=bool(snapshot.get("is_critical", False)),
            timeout_ms=int(snapshot.get("timeout_ms", 30000)),
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger_id": self.trigger_id,
            "action_type": self.action_type,
            "position": self.position,
            "config": copy.deepcopy(self.config),
            "is_critical": self.is_critical,
            "timeout_ms": self.timeout_ms,
        }


@dataclass(frozen=True)
class TriggerSpec:
    id: str
    tenant_id: str
    event_type: str
    name: str = ""
    conditions: tuple[dict[str, Any], ...] = ()
    priority: int = 0
    status: str = "active"
    error_handling: ErrorHandling = "stop_on_first_error"
    actions: tuple[ActionSpec, ...] = ()

    @classmethod
    def from_row(cls, row: Any, actions: list[Any]) -> "TriggerSpec":
        ordered = sorted(actions, key=lambda action: action.position)
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            event_type=row.event_type,
            name=row.name,
            conditions=tuple(copy.deepcopy(row.conditions or [])),
            priority=row.priority,
            status=row.status,
            error_handling=row.error_handling,
            actions=tuple(ActionSpec.from_row(action) for action in ordered),
        )

    def snapshot(self) -> dict[str, Any]:
        # Actions are snapshotted separately per dead-letter entry.
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "name": self.name,
            "conditions": copy.deepcopy(list(self.conditions)),
            "priority": self.priority,
            "error_handling": self.error_handling,
        }
