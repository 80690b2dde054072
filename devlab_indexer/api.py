"""
REST + WebSocket surface for the dashboard and replay UI.

REST routes live under /api; the live channel is the WebSocket at /ws.
Client -> server: {"action": "subscribe" | "unsubscribe", "contractAddress": "0x.."}
Server -> client: {"type": "recent-events" | "new-event" | "new-block" | "metrics-update", "data": ...}
"""

import asyncio
import contextlib
import json
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from web3 import AsyncWeb3

from devlab_indexer import config
from devlab_indexer.broadcast import GLOBAL_TOPIC, RECENT_EVENTS, contract_topic
from devlab_indexer.errors import (
    EmptyRange, InvalidInterface, InvalidRange, NotFound, PersistenceError,
    SessionNotFound, UpstreamUnavailable,
)
from devlab_indexer.helpers import parse_time, to_addr, utcnow
from devlab_indexer.indexer import EventIngestor
from devlab_indexer.replay import ReplaySessions, diff_snapshots
from devlab_indexer.state import StateCapturer

logger = structlog.get_logger()


class ApiError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


# ---------- request bodies ----------
class ContractIn(BaseModel):
    address: Optional[str] = None
    abi: Any = None
    name: Optional[str] = None


class SessionIn(BaseModel):
    contract_address: str = Field(alias="contractAddress")
    start_block: int = Field(alias="startBlock", ge=0)
    end_block: int = Field(alias="endBlock", ge=0)


class SeekIn(BaseModel):
    block_number: int = Field(alias="blockNumber")


class StepIn(BaseModel):
    direction: str = "forward"


class PlayIn(BaseModel):
    speed: float = Field(1.0, gt=0)


def _address_or_400(address: str) -> str:
    if not AsyncWeb3.is_address(address):
        raise ApiError(400, f"invalid contract address: {address}")
    return to_addr(address)


def create_app(
    ingestor: EventIngestor,
    sessions: Optional[ReplaySessions] = None,
    capturer: Optional[StateCapturer] = None,
) -> FastAPI:
    storage = ingestor.storage
    broadcaster = ingestor.broadcaster
    sessions = sessions or ReplaySessions(storage)
    capturer = capturer or StateCapturer(ingestor.connector, ingestor.registry, storage)

    app = FastAPI(title="devlab-indexer")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.state.ingestor = ingestor
    app.state.sessions = sessions
    app.state.capturer = capturer

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error("Storage error serving request", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"error": "Storage unavailable"})

    @app.exception_handler(SessionNotFound)
    async def session_not_found_handler(request: Request, exc: SessionNotFound):
        return JSONResponse(status_code=404, content={"error": f"Replay session {exc.args[0]} not found"})

    # ---------- health / status ----------
    @app.get("/health")
    async def health():
        return {"status": "OK", "timestamp": utcnow().isoformat()}

    @app.get("/api/status")
    async def status():
        return {
            "status": "running",
            "uptime": ingestor.uptime(),
            "metrics": ingestor.metrics.snapshot(),
            "lastBlock": ingestor.last_block,
            "contracts": ingestor.registry.addresses(),
            "timestamp": utcnow().isoformat(),
        }

    # ---------- queries ----------
    @app.get("/api/events/{contract_address}")
    async def events_by_contract(
        contract_address: str,
        limit: int = Query(50, ge=1, le=1000),
        start_time: Optional[str] = Query(None, alias="startTime"),
        end_time: Optional[str] = Query(None, alias="endTime"),
    ):
        address = _address_or_400(contract_address)
        if start_time and end_time:
            try:
                start, end = parse_time(start_time), parse_time(end_time)
            except ValueError:
                raise ApiError(400, "startTime and endTime must be ISO-8601 or unix seconds")
            events = await storage.get_events_by_time_range(address, start, end)
        else:
            events = await storage.get_recent_events(address, limit)
        return {"events": [e.to_wire() for e in events]}

    @app.get("/api/blocks")
    async def blocks_by_range(
        start_block: Optional[int] = Query(None, alias="startBlock"),
        end_block: Optional[int] = Query(None, alias="endBlock"),
    ):
        if start_block is None or end_block is None:
            raise ApiError(400, "startBlock and endBlock are required")
        blocks = await storage.get_blocks_by_range(start_block, end_block)
        return {"blocks": [b.to_wire() for b in blocks]}

    @app.get("/api/metrics/{contract_address}")
    async def metrics_by_contract(
        contract_address: str,
        time_range: str = Query(config.DEFAULT_METRIC_WINDOW, alias="timeRange"),
    ):
        address = _address_or_400(contract_address)
        rows = await storage.get_metrics(address, time_range)
        return {
            "contractMetrics": [
                {
                    "eventName": r["event_name"],
                    "eventCount": r["event_count"],
                    "blocksWithEvents": r["blocks_with_events"],
                    "avgGasUsed": r["avg_gas_used"],
                }
                for r in rows
            ],
            "systemMetrics": ingestor.metrics.snapshot(),
        }

    # ---------- contracts ----------
    @app.post("/api/contracts")
    async def add_contract(body: ContractIn):
        if not body.address or body.abi is None:
            raise ApiError(400, "address and abi are required")
        try:
            decoder = await ingestor.add_contract(body.address, body.abi, body.name)
        except InvalidInterface as e:
            logger.error("Failed to add contract", contract=body.address, error=str(e))
            raise ApiError(500, "Failed to add contract")
        return {"message": "Contract added successfully", "address": decoder.address, "events": decoder.event_names}

    @app.get("/api/contracts")
    async def list_contracts():
        return {"contracts": ingestor.registry.addresses()}

    # ---------- replay: state ----------
    @app.get("/api/replay/state/{contract_address}/{block_number}")
    async def contract_state(contract_address: str, block_number: int):
        address = _address_or_400(contract_address)
        try:
            snapshot = await capturer.get_or_capture(address, block_number)
        except UpstreamUnavailable as e:
            raise ApiError(502, str(e))
        if snapshot is None:
            raise ApiError(404, f"no state for {address} at block {block_number}")
        return snapshot.to_wire()

    @app.post("/api/replay/state/{contract_address}/{block_number}")
    async def capture_state(contract_address: str, block_number: int):
        address = _address_or_400(contract_address)
        try:
            snapshot = await capturer.capture(address, block_number)
        except NotFound as e:
            raise ApiError(404, str(e))
        except UpstreamUnavailable as e:
            raise ApiError(502, str(e))
        return snapshot.to_wire()

    @app.get("/api/replay/diff/{contract_address}")
    async def state_diff(
        contract_address: str,
        from_block: int = Query(..., alias="from"),
        to_block: int = Query(..., alias="to"),
    ):
        address = _address_or_400(contract_address)
        before = await storage.get_contract_state(address, from_block)
        after = await storage.get_contract_state(address, to_block)
        return diff_snapshots(address, from_block, to_block, before, after).to_wire()

    # ---------- replay: sessions ----------
    @app.post("/api/replay/session")
    async def create_session(body: SessionIn):
        _address_or_400(body.contract_address)
        try:
            engine = await sessions.create(body.contract_address, body.start_block, body.end_block)
        except InvalidRange as e:
            raise ApiError(400, str(e))
        except EmptyRange as e:
            raise ApiError(404, str(e))
        return engine.snapshot()

    @app.get("/api/replay/session/{session_id}")
    async def get_session(session_id: str):
        return sessions.get(session_id).snapshot()

    @app.delete("/api/replay/session/{session_id}")
    async def close_session(session_id: str):
        sessions.close(session_id)
        return {"message": "Session closed", "sessionId": session_id}

    @app.post("/api/replay/session/{session_id}/seek")
    async def seek(session_id: str, body: SeekIn):
        engine = sessions.get(session_id)
        engine.seek(body.block_number)
        return engine.snapshot()

    @app.post("/api/replay/session/{session_id}/step")
    async def step(session_id: str, body: Optional[StepIn] = None):
        engine = sessions.get(session_id)
        body = body or StepIn()
        if body.direction == "forward":
            engine.step_forward()
        elif body.direction == "backward":
            engine.step_backward()
        else:
            raise ApiError(400, "direction must be 'forward' or 'backward'")
        return engine.snapshot()

    @app.post("/api/replay/session/{session_id}/play")
    async def play(session_id: str, body: Optional[PlayIn] = None):
        engine = sessions.get(session_id)
        body = body or PlayIn()
        engine.play(body.speed)
        return engine.snapshot()

    @app.post("/api/replay/session/{session_id}/pause")
    async def pause(session_id: str):
        engine = sessions.get(session_id)
        engine.pause()
        return engine.snapshot()

    @app.post("/api/replay/session/{session_id}/reset")
    async def reset(session_id: str):
        engine = sessions.get(session_id)
        engine.reset()
        return engine.snapshot()

    @app.get("/api/replay/session/{session_id}/events")
    async def session_events(session_id: str, block: Optional[int] = None):
        engine = sessions.get(session_id)
        block_number = engine.current_block if block is None else block
        return {"blockNumber": block_number, "events": [e.to_wire() for e in engine.events_at(block_number)]}

    # ---------- live channel ----------
    def enqueue(inbox: asyncio.Queue, message: dict) -> None:
        # same overflow policy as broadcast subscriptions: drop the oldest
        if inbox.full():
            inbox.get_nowait()
        inbox.put_nowait(message)

    @app.websocket("/ws")
    async def live(ws: WebSocket):
        await ws.accept()
        inbox: asyncio.Queue = asyncio.Queue(maxsize=broadcaster.queue_size)
        subs = {GLOBAL_TOPIC: broadcaster.subscribe(GLOBAL_TOPIC, inbox)}
        logger.info("Client connected", clients=broadcaster.subscriber_count(GLOBAL_TOPIC))

        async def pump():
            while True:
                await ws.send_json(await inbox.get())

        sender = asyncio.create_task(pump())
        try:
            while True:
                try:
                    msg = json.loads(await ws.receive_text())
                except ValueError:
                    msg = None
                action = msg.get("action") if isinstance(msg, dict) else None
                address = msg.get("contractAddress") if isinstance(msg, dict) else None
                if action not in ("subscribe", "unsubscribe") or not address or not AsyncWeb3.is_address(address):
                    enqueue(inbox, {"type": "error", "data": "expected {action: subscribe|unsubscribe, contractAddress}"})
                    continue
                topic = contract_topic(address)
                if action == "subscribe":
                    try:
                        recent = await storage.get_recent_events(address, config.RECENT_EVENTS_ON_SUBSCRIBE)
                    except PersistenceError as e:
                        logger.error("Failed to load recent events", contract=to_addr(address), error=str(e))
                        recent = []
                    # no await between the snapshot and the subscription: recent-events always comes first
                    enqueue(inbox, {"type": RECENT_EVENTS, "data": [e.to_wire() for e in recent]})
                    if topic not in subs:
                        subs[topic] = broadcaster.subscribe(topic, inbox)
                    logger.info("Client subscribed", contract=to_addr(address))
                else:
                    sub = subs.pop(topic, None)
                    if sub is not None:
                        sub.close()
                    logger.info("Client unsubscribed", contract=to_addr(address))
        except WebSocketDisconnect:
            pass
        finally:
            for sub in subs.values():
                sub.close()
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                try:
                    await sender
                except Exception as e:
                    logger.debug("Client send failed", error=str(e))
            logger.info("Client disconnected", clients=broadcaster.subscriber_count(GLOBAL_TOPIC))

    return app
