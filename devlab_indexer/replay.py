"""
Replay / timeline engine.

A ReplayEngine loads a fixed block range for one contract from storage once
and then navigates it deterministically: seek, step forward/backward, timed
playback and per-block event lookup. It never talks to the live connector.

States: Unloaded -> Loaded(current_block, playing).
"""

import asyncio
import uuid
from bisect import bisect_left
from collections import OrderedDict
from typing import Dict, List, Optional

import structlog

from devlab_indexer import config
from devlab_indexer.db import Storage
from devlab_indexer.errors import EmptyRange, InvalidRange, SessionNotFound
from devlab_indexer.helpers import to_addr
from devlab_indexer.models import Block, ContractStateSnapshot, Event, KeyChange, StateDiff

logger = structlog.get_logger()


def diff_snapshots(
    contract_address: str,
    from_block: int,
    to_block: int,
    before: Optional[ContractStateSnapshot],
    after: Optional[ContractStateSnapshot],
) -> StateDiff:
    """
    Per-key change set between two snapshots. Unchanged keys are left out.
    A missing side turns every key of the other side into an "unknown" change.
    """
    changes: Dict[str, KeyChange] = {}
    if before is not None and after is not None:
        old, new = before.state_data, after.state_data
        for key in sorted(set(old) | set(new)):
            if key not in old:
                changes[key] = KeyChange(after=new[key], change="added")
            elif key not in new:
                changes[key] = KeyChange(before=old[key], change="removed")
            elif old[key] != new[key]:
                changes[key] = KeyChange(before=old[key], after=new[key], change="modified")
    elif before is not None:
        for key, value in sorted(before.state_data.items()):
            changes[key] = KeyChange(before=value, change="unknown")
    elif after is not None:
        for key, value in sorted(after.state_data.items()):
            changes[key] = KeyChange(after=value, change="unknown")

    return StateDiff(
        contract_address=contract_address,
        from_block=from_block,
        to_block=to_block,
        from_available=before is not None,
        to_available=after is not None,
        changes=changes,
    )


class ReplayEngine:

    def __init__(self, storage: Storage, session_id: Optional[str] = None):
        self.storage = storage
        self.session_id = session_id or uuid.uuid4().hex
        self.contract_address: Optional[str] = None
        self.start_block: Optional[int] = None
        self.end_block: Optional[int] = None
        self.blocks: List[Block] = []
        self.events: List[Event] = []
        self.speed: float = 1.0
        self._numbers: List[int] = []
        self._events_by_block: Dict[int, List[Event]] = {}
        self._index: Optional[int] = None
        self._play_task: Optional[asyncio.Task] = None

    # ---------- state ----------
    @property
    def loaded(self) -> bool:
        return self._index is not None

    @property
    def playing(self) -> bool:
        return self._play_task is not None and not self._play_task.done()

    @property
    def current_block(self) -> Optional[int]:
        return None if self._index is None else self._numbers[self._index]

    def current_block_data(self) -> Optional[Block]:
        return None if self._index is None else self.blocks[self._index]

    def pending_blocks(self) -> List[int]:
        """Block numbers referenced by loaded events but missing from storage."""
        present = set(self._numbers)
        return sorted(n for n in self._events_by_block if n not in present)

    # ---------- load ----------
    async def load(self, contract_address: str, start_block: int, end_block: int) -> Block:
        if start_block > end_block:
            raise InvalidRange(f"start_block {start_block} is after end_block {end_block}")
        self.pause()

        address = to_addr(contract_address)
        blocks = await self.storage.get_blocks_by_range(start_block, end_block)
        if not blocks:
            self._unload()
            raise EmptyRange(start_block, end_block)
        events = await self.storage.get_events_by_block_range(address, start_block, end_block)

        self.contract_address = address
        self.start_block, self.end_block = start_block, end_block
        self.blocks = blocks
        self.events = events
        self._numbers = [b.block_number for b in blocks]
        self._events_by_block = {}
        for e in events:
            self._events_by_block.setdefault(e.block_number, []).append(e)
        self._index = 0

        logger.info(
            "Replay loaded",
            session=self.session_id,
            contract=address,
            start_block=start_block,
            end_block=end_block,
            blocks=len(blocks),
            events=len(events),
        )
        return blocks[0]

    def _unload(self) -> None:
        self.blocks, self.events, self._numbers = [], [], []
        self._events_by_block = {}
        self._index = None

    # ---------- navigation ----------
    def seek(self, block_number: int) -> Optional[int]:
        """
        Snap to the nearest loaded block. Equal distance prefers the lower block.
        Binary search over the sorted block numbers.
        """
        if not self.loaded:
            return None
        nums = self._numbers
        i = bisect_left(nums, block_number)
        if i == 0:
            self._index = 0
        elif i == len(nums):
            self._index = len(nums) - 1
        else:
            lo, hi = i - 1, i
            self._index = lo if block_number - nums[lo] <= nums[hi] - block_number else hi
        return self.current_block

    def step_forward(self) -> Optional[int]:
        if self.loaded and self._index < len(self._numbers) - 1:
            self._index += 1
        return self.current_block

    def step_backward(self) -> Optional[int]:
        if self.loaded and self._index > 0:
            self._index -= 1
        return self.current_block

    def at_end(self) -> bool:
        return self.loaded and self._index == len(self._numbers) - 1

    def reset(self) -> Optional[int]:
        self.pause()
        if self.loaded:
            self._index = 0
        return self.current_block

    # ---------- playback ----------
    def play(self, speed: float = 1.0) -> Optional[asyncio.Task]:
        """
        Step forward every 1000/speed ms until the end of the range or pause().
        Starting playback again cancels the running timer first.
        """
        if speed <= 0:
            raise ValueError("speed must be positive")
        self.pause()
        self.speed = speed
        if not self.loaded or self.at_end():
            return None
        self._play_task = asyncio.create_task(self._playback(1.0 / speed))
        return self._play_task

    async def _playback(self, interval: float) -> None:
        while not self.at_end():
            await asyncio.sleep(interval)
            self.step_forward()
        logger.debug("Replay reached end of range", session=self.session_id, block=self.current_block)

    def pause(self) -> None:
        task, self._play_task = self._play_task, None
        if task is not None and not task.done():
            task.cancel()

    # ---------- reads ----------
    def events_at(self, block_number: int) -> List[Event]:
        return list(self._events_by_block.get(block_number, []))

    async def diff(self, contract_address: str, from_block: int, to_block: int) -> StateDiff:
        address = to_addr(contract_address)
        before = await self.storage.get_contract_state(address, from_block)
        after = await self.storage.get_contract_state(address, to_block)
        return diff_snapshots(address, from_block, to_block, before, after)

    def snapshot(self) -> dict:
        block = self.current_block_data()
        return {
            "sessionId": self.session_id,
            "contractAddress": self.contract_address,
            "startBlock": self.start_block,
            "endBlock": self.end_block,
            "loaded": self.loaded,
            "playing": self.playing,
            "speed": self.speed,
            "currentBlock": self.current_block,
            "block": block.to_wire() if block else None,
            "blockCount": len(self.blocks),
            "eventCount": len(self.events),
            "currentEvents": [e.to_wire() for e in self.events_at(self.current_block)] if self.loaded else [],
            "pendingBlocks": self.pending_blocks(),
        }


class ReplaySessions:
    """
    Replay engines created over the REST API, keyed by session id. At most
    max_sessions are kept; creating one more evicts the least recently used.
    """

    def __init__(self, storage: Storage, max_sessions: int = config.MAX_REPLAY_SESSIONS):
        self.storage = storage
        self.max_sessions = max(1, max_sessions)
        self._sessions: "OrderedDict[str, ReplayEngine]" = OrderedDict()

    async def create(self, contract_address: str, start_block: int, end_block: int) -> ReplayEngine:
        engine = ReplayEngine(self.storage)
        await engine.load(contract_address, start_block, end_block)
        while len(self._sessions) >= self.max_sessions:
            evicted_id, evicted = self._sessions.popitem(last=False)
            evicted.pause()
            logger.info("Replay session evicted", session=evicted_id)
        self._sessions[engine.session_id] = engine
        return engine

    def get(self, session_id: str) -> ReplayEngine:
        try:
            engine = self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None
        self._sessions.move_to_end(session_id)
        return engine

    def close(self, session_id: str) -> None:
        engine = self._sessions.pop(session_id, None)
        if engine is None:
            raise SessionNotFound(session_id)
        engine.pause()

    def close_all(self) -> None:
        for engine in self._sessions.values():
            engine.pause()
        self._sessions.clear()

    def __len__(self):
        return len(self._sessions)
