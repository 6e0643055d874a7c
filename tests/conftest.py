"""
Pytest configuration and shared fixtures.

Provides a scripted AcFun client, a recording sleep, a spying session store
and helpers for building snapshots.
"""

from typing import Dict, List, Optional, Union

import pytest
import pytest_asyncio

from livearchive.acfun_api import LivePage, Playback
from livearchive.config import FinalizerConfig, PollingConfig
from livearchive.errors import TransientUpstreamError
from livearchive.session import Session, SessionPool, Snapshot
from livearchive.store import SessionStore

ALIYUN_PARTIAL = "https://alivod.example.com/live/abc.m3u8"
TENCENT_PARTIAL = "https://txvod.example.com/live/abc.m3u8"
ALIYUN_FINAL = "https://alivod.example.com/live/abc.0-0.0.m3u8"
TENCENT_FINAL = "https://txvod.example.com/live/abc.0-0.0.m3u8"

PARTIAL = Playback(duration=60_000, url=ALIYUN_PARTIAL, backup_url=TENCENT_PARTIAL)
FINAL = Playback(duration=3_600_000, url=ALIYUN_FINAL, backup_url=TENCENT_FINAL)
EMPTY = Playback(duration=0, url="", backup_url="")

Scripted = Union[Playback, LivePage, int, Exception]


class FakeAcFunAPI:
    """
    Scripted stand-in for AcFunAPI.

    Each script is consumed in order; its last item repeats forever.
    """

    def __init__(self, events: Optional[list] = None):
        self.pages: List[Scripted] = []
        self.playbacks: Dict[str, List[Scripted]] = {}
        self.cut_nums: Dict[str, List[Scripted]] = {}
        self.page_requests: List[int] = []
        self.playback_calls: List[str] = []
        self.cut_calls: List[str] = []
        self.events = events if events is not None else []

    @staticmethod
    def _next(script: List[Scripted]) -> Scripted:
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_live_page(self, count: int) -> LivePage:
        self.page_requests.append(count)
        return self._next(self.pages)

    async def get_playback(self, session_id: str) -> Playback:
        self.playback_calls.append(session_id)
        self.events.append(("resolve", session_id))
        script = self.playbacks.get(session_id) or [TransientUpstreamError("nothing scripted")]
        item = self._next(script)
        # The resolver rewrites links in place
        return Playback(item.duration, item.url, item.backup_url)

    async def get_live_cut_num(self, owner_id: int, session_id: str) -> int:
        self.cut_calls.append(session_id)
        return self._next(self.cut_nums.get(session_id) or [0])


class SleepRecorder:
    """Awaitable sleep that returns at once and remembers what was asked."""

    def __init__(self, events: Optional[list] = None):
        self.calls: List[float] = []
        self.events = events if events is not None else []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.events.append(("sleep", seconds))


class SpyStore(SessionStore):
    """SessionStore that records every write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.inserts: List[str] = []
        self.playback_updates: List[tuple] = []
        self.duration_updates: List[tuple] = []

    async def insert_if_absent(self, session: Session) -> bool:
        self.inserts.append(session.session_id)
        return await super().insert_if_absent(session)

    async def update_playback(self, session_id, duration_ms, playback_url, backup_url) -> int:
        self.playback_updates.append((session_id, duration_ms, playback_url, backup_url))
        return await super().update_playback(session_id, duration_ms, playback_url, backup_url)

    async def update_duration(self, session_id, duration_ms) -> int:
        self.duration_updates.append((session_id, duration_ms))
        return await super().update_duration(session_id, duration_ms)


def fill_session(
    session: Session,
    session_id: str,
    owner_id: int = 1000,
    start_time: int = 1_700_000_000_000,
    title: str = "",
) -> Session:
    session.session_id = session_id
    session.owner_id = owner_id
    session.owner_name = f"user{owner_id}"
    session.stream_name = f"stream-{session_id}"
    session.start_time = start_time
    session.title = title or f"live {session_id}"
    return session


def make_snapshot(pool: SessionPool, *session_ids: str) -> Snapshot:
    return {sid: fill_session(pool.acquire(), sid) for sid in session_ids}


def live_entry(session_id: str, owner_id: int = 1000, name: str = "streamer") -> dict:
    return {
        'liveId': session_id,
        'authorId': owner_id,
        'user': {'name': name},
        'streamName': f"stream-{session_id}",
        'createTime': 1_700_000_000_000,
        'title': f"live {session_id}",
    }


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def api(events) -> FakeAcFunAPI:
    return FakeAcFunAPI(events)


@pytest.fixture
def sleeper(events) -> SleepRecorder:
    return SleepRecorder(events)


@pytest.fixture
def pool() -> SessionPool:
    return SessionPool()


@pytest.fixture
def polling_config() -> PollingConfig:
    return PollingConfig(interval=0, retry_delay=1, page_size_start=1000,
                         page_size_factor=10, page_size_limit=10_000_000)


@pytest.fixture
def finalizer_config() -> FinalizerConfig:
    return FinalizerConfig(grace_delay=10, retry_delay=1, backfill_interval=1800,
                           backfill_iterations=30, finalized_marker=".0-0.0")


@pytest_asyncio.fixture
async def store(tmp_path):
    store = SpyStore(str(tmp_path / "sessions.db"))
    await store.open()
    yield store
    await store.close()
