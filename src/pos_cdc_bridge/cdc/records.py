"""Value types flowing through the CDC pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class RowState(str, Enum):
    PENDING = "PENDING"
    EVALUATED = "EVALUATED"
    SKIPPED_NOISE = "SKIPPED-NOISE"
    SKIPPED_DUPLICATE = "SKIPPED-DUPLICATE"
    PUBLISHED = "PUBLISHED"
    PUBLISH_FAILED = "PUBLISH-FAILED"
    PROCESSING_ERROR = "PROCESSING-ERROR"

    @property
    def successful(self) -> bool:
        return self in (
            RowState.PUBLISHED,
            RowState.SKIPPED_DUPLICATE,
            RowState.SKIPPED_NOISE,
        )


@dataclass(frozen=True)
class ChangeRecord:
    """One pending row returned by the change source."""

    table: str
    row_id: int
    version: int
    operation: str
    payload: Mapping[str, Any]

    @classmethod
    def from_row(cls, table: str, row: Mapping[str, Any]) -> "ChangeRecord":
        payload = dict(row)
        version = int(payload.pop("change_version"))
        operation = str(payload.pop("change_operation", "U")).strip().upper()
        return cls(
            table=table,
            row_id=int(payload["id"]),
            version=version,
            operation=operation,
            payload=payload,
        )

    def get(self, column: str, default: Any = None) -> Any:
        return self.payload.get(column, default)


@dataclass
class RowOutcome:
    """Terminal disposition of one record plus the response written back."""

    record: ChangeRecord
    state: RowState
    response: str
    message_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


__all__ = ["ChangeRecord", "RowOutcome", "RowState"]
