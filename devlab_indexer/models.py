"""
Records passed between the connector, pipeline, storage and replay engine.

Field names are snake_case in Python; wire payloads (REST, WebSocket, MCP)
are dumped with camelCase aliases via `to_wire()`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Block(Record):
    block_number: int = Field(ge=0)
    timestamp: datetime
    transaction_count: int = Field(ge=0)
    gas_used: int = Field(ge=0)
    gas_limit: int = Field(ge=0)
    # full tx objects from the node, keyed by lowercase hash; never persisted
    transactions: dict[str, dict] = Field(default_factory=dict, exclude=True)


class Event(Record):
    id: Optional[int] = None
    contract_address: str
    event_name: str
    block_number: int = Field(ge=0)
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None
    args: list[Any] = Field(default_factory=list)
    gas_used: Optional[int] = None
    timestamp: datetime
    created_at: Optional[datetime] = None


class Transaction(Record):
    hash: str
    block_number: int
    from_address: str = Field(alias="from")
    to_address: Optional[str] = Field(default=None, alias="to")
    value: int = 0
    gas_used: int
    gas_price: int
    status: int
    timestamp: datetime


class Receipt(Record):
    transaction_hash: str
    block_number: int
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    gas_used: int
    effective_gas_price: int = 0
    status: int = 1
    contract_address: Optional[str] = None


class ContractStateSnapshot(Record):
    contract_address: str
    block_number: int
    state_data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class DecodedEvent(Record):
    """A raw log matched against a watched contract's ABI."""
    contract_address: str
    event_name: str
    block_number: int
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None
    args: list[Any] = Field(default_factory=list)
    arg_names: list[str] = Field(default_factory=list)


class KeyChange(Record):
    before: Any = None
    after: Any = None
    change: str  # added | removed | modified | unknown


class StateDiff(Record):
    contract_address: str
    from_block: int
    to_block: int
    from_available: bool
    to_available: bool
    changes: dict[str, KeyChange] = Field(default_factory=dict)


@dataclass
class Metrics:
    """
    Process-wide ingestion counters. Owned by the pipeline and handed by
    reference to the metrics timer and the query handlers.
    """
    total_events: int = 0
    events_per_second: int = 0
    error_count: int = 0
    last_event_time: Optional[datetime] = None
    _last_tick_total: int = field(default=0, repr=False)

    def record_event(self, when: datetime) -> None:
        self.total_events += 1
        self.last_event_time = when

    def record_error(self) -> None:
        self.error_count += 1

    def tick(self) -> int:
        """Recompute the per-interval rate from the delta of total_events."""
        self.events_per_second = self.total_events - self._last_tick_total
        self._last_tick_total = self.total_events
        return self.events_per_second

    def snapshot(self) -> dict:
        return {
            "totalEvents": self.total_events,
            "eventsPerSecond": self.events_per_second,
            "errorCount": self.error_count,
            "lastEventTime": self.last_event_time.isoformat() if self.last_event_time else None,
        }
