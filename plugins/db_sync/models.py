"""
Sync Data Model

Plain dataclasses shared by the introspector, extractor, executor and
orchestrator, plus their wire (JSON) representations. Wire keys follow the
agent protocol: snake_case for column metadata, camelCase everywhere else.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import math

from db_sync.errors import ConfigurationError, DataError


class SyncStrategy(str, Enum):
    """Replication policy applied to the target table."""

    REPLACE = "replace"
    MERGE = "merge"

    @classmethod
    def parse(cls, value: Any) -> "SyncStrategy":
        if isinstance(value, cls):
            return value
        if value is None or value == "":
            return cls.REPLACE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unsupported sync strategy '{value}' (expected 'replace' or 'merge')"
            )


@dataclass(frozen=True)
class ColumnDescriptor:
    """Metadata for one column, as reported by the catalog."""

    column_name: str
    data_type: str
    is_nullable: bool = True
    character_maximum_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnDescriptor":
        try:
            name = data["column_name"]
            data_type = data["data_type"]
        except (KeyError, TypeError):
            raise DataError(f"Malformed column descriptor: {data!r}")

        nullable = data.get("is_nullable", True)
        if isinstance(nullable, str):
            nullable = nullable.strip().upper() == "YES"

        return cls(
            column_name=str(name),
            data_type=str(data_type),
            is_nullable=bool(nullable),
            character_maximum_length=_optional_int(data.get("character_maximum_length")),
            numeric_precision=_optional_int(data.get("numeric_precision")),
            numeric_scale=_optional_int(data.get("numeric_scale")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "column_name": self.column_name,
            "data_type": self.data_type,
            "character_maximum_length": self.character_maximum_length,
            "is_nullable": "YES" if self.is_nullable else "NO",
            "numeric_precision": self.numeric_precision,
            "numeric_scale": self.numeric_scale,
        }


# Ordered column metadata for one table, and ordered primary key column names
TableSchema = List[ColumnDescriptor]
PrimaryKey = List[str]


def schema_from_wire(columns: Optional[List[Dict[str, Any]]]) -> TableSchema:
    return [ColumnDescriptor.from_dict(col) for col in (columns or [])]


def schema_to_wire(schema: TableSchema) -> List[Dict[str, Any]]:
    return [col.to_dict() for col in schema]


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class BatchResult:
    """Row-level counters for one write call or an aggregate of several."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
            skipped=self.skipped + other.skipped,
        )

    @property
    def affected(self) -> int:
        return self.inserted + self.updated + self.deleted

    def to_dict(self) -> Dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchResult":
        return cls(
            inserted=int(data.get("inserted") or 0),
            updated=int(data.get("updated") or 0),
            deleted=int(data.get("deleted") or 0),
            skipped=int(data.get("skipped") or 0),
        )


@dataclass
class FetchedBatch:
    """One page of sanitized source rows plus paging metadata."""

    rows: List[Dict[str, Any]]
    total_count: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total_count

    @property
    def next_offset(self) -> Optional[int]:
        return self.offset + self.limit if self.has_more else None

    @property
    def batch_number(self) -> int:
        return self.offset // self.limit + 1

    @property
    def total_batches(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.rows,
            "totalCount": self.total_count,
            "offset": self.offset,
            "limit": self.limit,
            "hasMore": self.has_more,
            "nextOffset": self.next_offset,
            "batchNumber": self.batch_number,
            "totalBatches": self.total_batches,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FetchedBatch":
        try:
            return cls(
                rows=list(data.get("data") or []),
                total_count=int(data["totalCount"]),
                offset=int(data["offset"]),
                limit=int(data["limit"]),
            )
        except (KeyError, TypeError, ValueError):
            raise DataError("Malformed batch response: missing totalCount/offset/limit")


@dataclass
class TableSyncResult:
    """Outcome of synchronizing one table."""

    table: str
    success: bool
    message: str
    counts: BatchResult = field(default_factory=BatchResult)
    table_created: bool = False
    duration_ms: int = 0
    strategy: SyncStrategy = SyncStrategy.REPLACE
    requested_strategy: SyncStrategy = SyncStrategy.REPLACE
    source_rows: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "table": self.table,
            "success": self.success,
            "message": self.message,
            "rowsInserted": self.counts.inserted,
            "rowsUpdated": self.counts.updated,
            "rowsDeleted": self.counts.deleted,
            "rowsSkipped": self.counts.skipped,
            "rowsAffected": self.counts.affected,
            "sourceRows": self.source_rows,
            "tableCreated": self.table_created,
            "duration": self.duration_ms,
            "strategy": self.strategy.value,
            "requestedStrategy": self.requested_strategy.value,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class SyncJobResult:
    """Aggregate outcome of one orchestrated job."""

    results: List[TableSyncResult]
    duration_ms: int
    strategy: SyncStrategy

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def totals(self) -> BatchResult:
        total = BatchResult()
        for r in self.results:
            total = total + r.counts
        return total

    def summary(self) -> Dict[str, Any]:
        totals = self.totals
        return {
            "totalTables": len(self.results),
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "totalInserted": totals.inserted,
            "totalUpdated": totals.updated,
            "totalDeleted": totals.deleted,
            "totalSkipped": totals.skipped,
            "totalAffected": totals.affected,
            "duration": self.duration_ms,
            "strategy": self.strategy.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary(),
            "message": "Orchestrated synchronization completed",
        }
