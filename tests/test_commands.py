"""Tests for the query surface and the command shell."""

import asyncio
import io
import logging
from datetime import datetime

import pytest

from livearchive.acfun_api import Playback, parse_playback
from livearchive.commands import (
    HELP_MESSAGE,
    CommandShell,
    QuerySurface,
    format_duration,
    format_start_time,
)
from livearchive.errors import NotFoundError, TransientUpstreamError
from livearchive.resolver import PlaybackResolver
from livearchive.session import Session

from conftest import ALIYUN_FINAL, EMPTY, FINAL, fill_session


@pytest.fixture
def queries(api, store, sleeper):
    return QuerySurface(store, PlaybackResolver(api, retry_delay=1, sleep=sleeper))


@pytest.fixture
def printed():
    return []


@pytest.fixture
def shell(queries, printed):
    return CommandShell(queries, asyncio.Event(), output=printed.append)


async def stored(store, session_id, owner_id=1000, start_time=1_700_000_000_000):
    session = fill_session(Session(), session_id, owner_id=owner_id, start_time=start_time)
    await store.insert_if_absent(session)
    return session


@pytest.mark.parametrize("ms,expected", [
    (0, "00:00:00"),
    (3_723_000, "01:02:03"),
    (3_723_999, "01:02:03"),
    (90_000_000, "25:00:00"),
])
def test_format_duration(ms, expected):
    assert format_duration(ms) == expected


def test_format_start_time_is_local_wall_clock():
    expected = datetime.fromtimestamp(1_700_000_000).strftime('%Y-%m-%d %H:%M:%S')

    assert format_start_time(1_700_000_000_999) == expected


@pytest.mark.asyncio
async def test_list_sessions(queries, store):
    await stored(store, "old", start_time=1_000_000)
    await stored(store, "new", start_time=2_000_000)

    lines = await queries.list_sessions(1000)

    assert len(lines) == 2
    assert "liveID: new" in lines[0]
    assert "uid: 1000 name: user1000" in lines[0]
    assert "duration: 00:00:00" in lines[0]
    assert len(await queries.list_sessions(1000, 1)) == 1


@pytest.mark.asyncio
async def test_list_unknown_owner(queries):
    with pytest.raises(NotFoundError, match="No records for uid 42"):
        await queries.list_sessions(42)


@pytest.mark.asyncio
async def test_resolve_persists_only_stored_sessions(queries, api, store):
    await stored(store, "known")
    api.playbacks["known"] = [FINAL]
    api.playbacks["unknown"] = [FINAL]

    playback, persisted = await queries.resolve("known")
    assert persisted is True
    assert playback.url == ALIYUN_FINAL

    playback, persisted = await queries.resolve("unknown")
    assert persisted is False
    assert playback.url == ALIYUN_FINAL
    assert not await store.exists("unknown")
    assert [u[0] for u in store.playback_updates] == ["known"]


@pytest.mark.asyncio
async def test_resolve_does_not_store_empty_links(queries, api, store):
    await stored(store, "a")
    api.playbacks["a"] = [EMPTY]

    _, persisted = await queries.resolve("a")

    assert persisted is False
    assert store.playback_updates == []
    assert store.duration_updates == []


@pytest.mark.asyncio
async def test_duration_without_links_is_kept(queries, api, store):
    await stored(store, "a", start_time=1_000_000)
    await stored(store, "b", start_time=2_000_000)
    timing_only = Playback(duration=5_400_000)
    api.playbacks["a"] = [timing_only]
    api.playbacks["b"] = [timing_only]
    api.playbacks["unknown"] = [timing_only]

    _, persisted = await queries.resolve("a")
    assert persisted is False
    _, persisted = await queries.resolve("unknown")
    assert persisted is False
    assert await queries.refresh_owner(1000) == 0

    assert store.playback_updates == []
    assert [u[0] for u in store.duration_updates] == ["a", "b", "a"]
    rows = await store.list_by_owner(1000)
    assert [row.duration_ms for row in rows] == [5_400_000, 5_400_000]
    assert all(row.playback_url == "" for row in rows)


@pytest.mark.asyncio
async def test_refresh_owner_skips_failures(queries, api, store):
    await stored(store, "good")
    await stored(store, "empty")
    await stored(store, "down")
    api.playbacks["good"] = [FINAL]
    api.playbacks["empty"] = [EMPTY]
    api.playbacks["down"] = [TransientUpstreamError("HTTP 500")]

    assert await queries.refresh_owner(1000) == 1
    assert [u[0] for u in store.playback_updates] == ["good"]

    with pytest.raises(NotFoundError):
        await queries.refresh_owner(7)


@pytest.mark.asyncio
async def test_list_command_prints_rows(shell, store, printed):
    await stored(store, "a", owner_id=1)
    await stored(store, "b", owner_id=2)

    assert await shell.handle_line("listall 1 2\n") is True

    assert len(printed) == 2
    assert "liveID: a" in printed[0]
    assert "liveID: b" in printed[1]


@pytest.mark.asyncio
async def test_list_command_reports_missing_owner(shell, printed, caplog):
    with caplog.at_level(logging.INFO, logger="livearchive"):
        await shell.handle_line("list10 5")

    assert printed == []
    assert "No records for uid 5" in caplog.text


@pytest.mark.asyncio
async def test_update_command(shell, api, store):
    await stored(store, "a")
    api.playbacks["a"] = [FINAL]

    await shell.handle_line("update10 1000")

    assert (await store.list_by_owner(1000))[0].playback_url == ALIYUN_FINAL


@pytest.mark.asyncio
async def test_getplayback_command(shell, api, printed):
    api.playbacks["a"] = [FINAL]
    api.playbacks["b"] = [TransientUpstreamError("down")]

    await shell.handle_line("getplayback a b")

    assert printed == [
        f"liveID: a duration: 01:00:00 playback: {ALIYUN_FINAL} backup: {FINAL.backup_url}"
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("line", ["hello", "listall", "listall abc", "getplayback", "quit now"])
async def test_malformed_commands_print_help(shell, printed, line, caplog):
    with caplog.at_level(logging.INFO, logger="livearchive"):
        assert await shell.handle_line(line) is True

    assert printed == []
    assert HELP_MESSAGE in caplog.text
    assert not shell.stop_event.is_set()


@pytest.mark.asyncio
async def test_blank_line_is_ignored(shell, caplog):
    with caplog.at_level(logging.INFO, logger="livearchive"):
        assert await shell.handle_line("   \n") is True

    assert caplog.text == ""


@pytest.mark.asyncio
async def test_quit_sets_stop(shell):
    assert await shell.handle_line("quit") is False
    assert shell.stop_event.is_set()


@pytest.mark.asyncio
async def test_run_reads_until_quit(queries, store, printed):
    await stored(store, "a")
    stop = asyncio.Event()
    stdin = io.StringIO("list10 1000\nquit\nlistall 1000\n")
    shell = CommandShell(queries, stop, output=printed.append, stdin=stdin)

    await asyncio.wait_for(shell.run(), timeout=5)

    assert stop.is_set()
    assert len(printed) == 1


@pytest.mark.asyncio
async def test_run_ends_at_end_of_input(queries):
    stop = asyncio.Event()
    shell = CommandShell(queries, stop, output=lambda line: None, stdin=io.StringIO(""))

    await asyncio.wait_for(shell.run(), timeout=5)

    assert not stop.is_set()


@pytest.mark.asyncio
async def test_getplayback_survives_malformed_manifest(queries, api, printed, caplog):
    async def get_playback(session_id):
        api.playback_calls.append(session_id)
        return parse_playback({'result': 1, 'data': {'adaptiveManifest': '[1]'}})

    api.get_playback = get_playback
    shell = CommandShell(queries, asyncio.Event(), output=printed.append)

    with caplog.at_level(logging.ERROR, logger="livearchive"):
        assert await shell.handle_line("getplayback x") is True

    assert api.playback_calls == ["x", "x", "x"]
    assert printed == []
    assert "failed after 3 attempts" in caplog.text
    assert not shell.stop_event.is_set()
