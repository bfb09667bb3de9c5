"""Data shared between the runner, the lineage coordinator and control plane clients."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from segment_push.spec import PushMode


class LineageState(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class LineageEntry:
    """One atomic segment-set replacement as reported by the control plane."""

    entry_id: str
    segments_from: frozenset[str]
    segments_to: frozenset[str]
    state: LineageState
    timestamp_ms: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineageEntry":
        return cls(
            entry_id=str(data.get("entryId") or data.get("entry_id")),
            segments_from=frozenset(data.get("segmentsFrom") or data.get("segments_from") or []),
            segments_to=frozenset(data.get("segmentsTo") or data.get("segments_to") or []),
            state=LineageState(_normalize_state(data.get("state", "IN_PROGRESS"))),
            timestamp_ms=int(data.get("timestamp") or data.get("timestamp_ms") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entryId": self.entry_id,
            "segmentsFrom": sorted(self.segments_from),
            "segmentsTo": sorted(self.segments_to),
            "state": self.state.value,
            "timestamp": self.timestamp_ms,
        }


def _normalize_state(state: str) -> str:
    # Controllers report reverted entries as REVERTED
    state = str(state).upper()
    return LineageState.ABORTED.value if state == "REVERTED" else state


@dataclass(frozen=True)
class TableIngestionConfig:
    """The part of a table config that decides whether a push is guarded."""

    segment_ingestion_type: str = "APPEND"
    consistent_data_push: bool = False

    @property
    def requires_consistent_push(self) -> bool:
        return self.segment_ingestion_type.upper() == "REFRESH" and self.consistent_data_push

    @classmethod
    def from_table_config(cls, table_config: dict[str, Any]) -> "TableIngestionConfig":
        """
        Read ``ingestionConfig.batchIngestionConfig`` from a table config.

        Accepts either a bare table config or a ``{"OFFLINE": {...}}`` wrapper.
        """
        if "ingestionConfig" not in table_config and len(table_config) == 1:
            (only,) = table_config.values()
            if isinstance(only, dict):
                table_config = only

        batch = (table_config.get("ingestionConfig") or {}).get("batchIngestionConfig") or {}
        return cls(
            segment_ingestion_type=str(batch.get("segmentIngestionType") or "APPEND"),
            consistent_data_push=bool(batch.get("consistentDataPush", False)),
        )


@dataclass
class PushResult:
    """What a finished push run did."""

    push_mode: PushMode
    table: str
    segments: list[str] = field(default_factory=list)
    consistent_push: bool = False
    lineage_entry_ids: dict[str, str] = field(default_factory=dict)
    partitions: int = 0
    duration_ms: float = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "push_mode": self.push_mode.value,
            "table": self.table,
            "segments": sorted(self.segments),
            "consistent_push": self.consistent_push,
            "lineage_entry_ids": dict(self.lineage_entry_ids),
            "partitions": self.partitions,
            "duration_ms": round(self.duration_ms, 1),
        }
