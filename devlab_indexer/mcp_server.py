# mcp_server.py
"""
Read-only MCP tools over the indexer's sqlite store. Runs as its own process
(`devlab-mcp`) next to the ingestion service and never touches the chain.
"""

from datetime import timedelta
from typing import Optional

import structlog
from fastmcp import FastMCP
from pydantic import BaseModel, Field

from devlab_indexer import config
from devlab_indexer.db import Storage
from devlab_indexer.helpers import parse_time, utcnow
from devlab_indexer.logging_setup import configure_logging
from devlab_indexer.replay import diff_snapshots

logger = structlog.get_logger()

mcp = FastMCP("devlab-index-mcp")

_storage: Optional[Storage] = None


async def get_storage() -> Storage:
    global _storage
    if _storage is None:
        _storage = await Storage(config.DB_PATH).open()
    return _storage


# --------- Pydantic input models ----------
class EventsIn(BaseModel):
    contract_address: str
    limit: int = Field(50, ge=1, le=1000)

class EventsWindowIn(BaseModel):
    contract_address: str
    start_time: str = Field(description="ISO-8601 or unix seconds")
    end_time: Optional[str] = Field(None, description="defaults to now")

class BlockRangeIn(BaseModel):
    start_block: int = Field(ge=0)
    end_block: int = Field(ge=0)

class MetricsIn(BaseModel):
    contract_address: str
    time_range: str = Field(config.DEFAULT_METRIC_WINDOW, description="1h | 24h | 7d")

class DiffIn(BaseModel):
    contract_address: str
    from_block: int
    to_block: int


# ----------------- Tools ------------------
@mcp.tool(name="events_recent")
async def events_recent(args: EventsIn):
    """Latest N events of a contract, newest first."""
    storage = await get_storage()
    events = await storage.get_recent_events(args.contract_address, args.limit)
    return [e.to_wire() for e in events]

@mcp.tool(name="events_window")
async def events_window(args: EventsWindowIn):
    """Events of a contract inside a time window, oldest first."""
    storage = await get_storage()
    start = parse_time(args.start_time)
    end = parse_time(args.end_time) if args.end_time else utcnow()
    events = await storage.get_events_by_time_range(args.contract_address, start, end)
    return [e.to_wire() for e in events]

@mcp.tool(name="blocks_range")
async def blocks_range(args: BlockRangeIn):
    """Blocks with start_block <= number <= end_block, ascending."""
    if args.end_block - args.start_block > 10_000:
        return {"error": "range too large (max 10000 blocks)"}
    storage = await get_storage()
    blocks = await storage.get_blocks_by_range(args.start_block, args.end_block)
    return [b.to_wire() for b in blocks]

@mcp.tool(name="contract_metrics")
async def contract_metrics(args: MetricsIn):
    """Event counts and average gas per event name over 1h / 24h / 7d."""
    storage = await get_storage()
    return await storage.get_metrics(args.contract_address, args.time_range)

@mcp.tool(name="replay_diff")
async def replay_diff(args: DiffIn):
    """Per-key state change between two captured snapshots of a contract."""
    storage = await get_storage()
    before = await storage.get_contract_state(args.contract_address, args.from_block)
    after = await storage.get_contract_state(args.contract_address, args.to_block)
    return diff_snapshots(args.contract_address, args.from_block, args.to_block, before, after).to_wire()

@mcp.tool(name="health")
async def health() -> dict:
    """Indexer store health: latest block, event totals, watched contracts."""
    storage = await get_storage()
    latest = await storage.get_latest_block()
    latest_block = await storage.get_block(latest) if latest is not None else None
    lag = None
    if latest_block is not None:
        lag = (utcnow() - latest_block.timestamp) / timedelta(seconds=1)
    return {
        "db_path": storage.path,
        "latest_block": latest,
        "seconds_behind": lag,
        "events": await storage.get_event_count(),
        "contracts": [c["address"] for c in await storage.get_contracts()],
        "ready": latest is not None,
    }


def main():
    configure_logging(config.LOG_LEVEL)
    logger.info("MCP server starting", port=config.MCP_PORT, db_path=config.DB_PATH)
    mcp.run(transport="http", host=config.API_HOST, port=config.MCP_PORT)


if __name__ == "__main__":
    main()
