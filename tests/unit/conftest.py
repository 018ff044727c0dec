"""Shared fakes for unit tests: an in-process Redis stub and a settable clock."""

from __future__ import annotations

import fnmatch
from typing import Any, Dict, List, Optional, Tuple

import pytest


class FakeClock:
    """Callable returning unix seconds; advanced explicitly by tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _FakeRedisState:
    """Synchronous implementation of the Redis commands relayq uses."""

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, float] = {}

    # strings

    def get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
    ) -> Optional[bool]:
        if nx and key in self.strings:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        self.strings[key] = value
        if ex is not None:
            self.ttls[key] = float(ex)
        elif px is not None:
            self.ttls[key] = px / 1000.0
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for store in (self.strings, self.lists, self.zsets, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    def exists(self, *keys: str) -> int:
        stores = (self.strings, self.lists, self.zsets, self.hashes)
        return sum(1 for key in keys if any(key in s for s in stores))

    def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = float(seconds)
        return True

    # lists

    def lpush(self, key: str, *values: str) -> int:
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    def lmove(self, src: str, dst: str, src_side: str, dst_side: str) -> Optional[str]:
        items = self.lists.get(src)
        if not items:
            return None
        value = items.pop() if src_side == "RIGHT" else items.pop(0)
        target = self.lists.setdefault(dst, [])
        if dst_side == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    def rpop(self, key: str) -> Optional[str]:
        items = self.lists.get(key)
        if not items:
            return None
        return items.pop()

    def lrem(self, key: str, count: int, value: str) -> int:
        items = self.lists.get(key, [])
        removed = 0
        if count >= 0:
            kept = []
            for item in items:
                if item == value and (count == 0 or removed < count):
                    removed += 1
                    continue
                kept.append(item)
        else:
            kept = []
            for item in reversed(items):
                if item == value and removed < -count:
                    removed += 1
                    continue
                kept.insert(0, item)
        self.lists[key] = kept
        return removed

    def lrange(self, key: str, start: int, stop: int) -> List[str]:
        items = self.lists.get(key, [])
        stop = len(items) if stop == -1 else stop + 1
        return list(items[start:stop])

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    # sorted sets

    def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    def zrangebyscore(self, key: str, min_score: Any, max_score: Any) -> List[str]:
        low = float(min_score)
        high = float(max_score)
        entries = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        return [member for member, score in entries if low <= score <= high]

    def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    def zscore(self, key: str, member: str) -> Optional[float]:
        return self.zsets.get(key, {}).get(member)

    # hashes

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        values = self.hashes.setdefault(key, {})
        values[field] = str(int(values.get(field, "0")) + amount)
        return int(values[field])

    def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self.hashes.get(key, {}))

    # server-side scripts registered by RedisJobQueue

    def claim_script(self, keys: List[str], args: List[Any]) -> Optional[str]:
        queue_key, processing_key, deadlines_key = keys
        job_id = self.rpop(queue_key)
        if job_id is None:
            return None
        self.lpush(processing_key, job_id)
        self.zadd(deadlines_key, {job_id: float(args[0])})
        return job_id

    def promote_script(self, keys: List[str], args: List[Any]) -> int:
        delayed_key, queue_key = keys
        if not self.zrem(delayed_key, args[0]):
            return 0
        self.lpush(queue_key, args[0])
        return 1

    def keys(self) -> List[str]:
        keys = set(self.strings) | set(self.lists) | set(self.zsets) | set(self.hashes)
        return sorted(keys)


class _FakePipeline:
    def __init__(self, state: _FakeRedisState):
        self._state = state
        self._commands: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        def buffer(*args: Any, **kwargs: Any) -> "_FakePipeline":
            self._commands.append((name, args, kwargs))
            return self

        return buffer

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        return [getattr(self._state, name)(*args, **kwargs) for name, args, kwargs in commands]


class _FakeScript:
    """Stands in for the object returned by ``register_script``."""

    def __init__(self, run):
        self._run = run
        self.calls = 0

    async def __call__(self, keys: Optional[List[str]] = None, args: Optional[List[Any]] = None):
        self.calls += 1
        return self._run(list(keys or []), list(args or []))


class FakeRedis:
    """Async facade over ``_FakeRedisState`` with MULTI/EXEC-style pipelines."""

    def __init__(self):
        self.state = _FakeRedisState()
        self.pipelines = 0

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        self.pipelines += 1
        return _FakePipeline(self.state)

    def register_script(self, script: str) -> _FakeScript:
        from relayq.core.job_queue.backends import LUA_CLAIM, LUA_PROMOTE

        runners = {
            LUA_CLAIM: self.state.claim_script,
            LUA_PROMOTE: self.state.promote_script,
        }
        return _FakeScript(runners[script])

    async def scan_iter(self, match: Optional[str] = None):
        for key in self.state.keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def __getattr__(self, name: str):
        command = getattr(self.state, name)

        async def call(*args: Any, **kwargs: Any) -> Any:
            return command(*args, **kwargs)

        return call


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
