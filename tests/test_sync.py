"""Tests for delta computation and the log sync task."""

import asyncio
import io
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from logsync.config import Config, NodeConfig
from logsync.errors import RemoteUnavailableError, TransportError
from logsync.feedback import Descriptor, Event
from logsync.ranges import SortedRangeSet
from logsync.store import SQLiteLogStore
from logsync.sync import (
    LogEndpointClient,
    LogSyncTask,
    Mode,
    SyncResult,
    SyncState,
    SyncStatus,
    calculate_delta,
)

# The sync tests talk to the real server app in-process
pytest.importorskip("fastapi")

from logsync.server import create_app


def descriptor(owner, log_id, ranges):
    return Descriptor(owner, log_id, SortedRangeSet.parse(ranges))


def make_events(owner, log_id, ids):
    return [Event(owner, log_id, i, 1000 + i, 1, {"n": str(i)}) for i in ids]


@pytest.fixture
def local_store():
    """Create the store of the syncing side."""
    store = SQLiteLogStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def remote_store():
    """Create the store behind the server."""
    store = SQLiteLogStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def client(remote_store):
    """Create a client talking to an in-process server."""
    app = create_app(Config(node=NodeConfig(name="test-server")), {"auditlog": remote_store})
    return LogEndpointClient(
        "http://testserver", "auditlog", timeout=5.0, transport=httpx.ASGITransport(app=app)
    )


@pytest.fixture
def task(local_store, client):
    """Create a push/pull task."""
    return LogSyncTask(local_store, client, "auditlog", mode=Mode.PUSHPULL)


def offline_client():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    return LogEndpointClient(
        "http://offline", "auditlog", timeout=1.0, transport=httpx.MockTransport(refuse)
    )


class TestCalculateDelta:
    """Tests for per-log delta computation."""

    def test_seed_scenario(self):
        """Test the delta as logs are added on both sides."""
        source = [descriptor("gwid", 1, "1-5")]
        destination = []

        delta = calculate_delta(source, destination)
        assert len(delta) == 1
        assert delta[0].range_set.to_representation() == "1-5"

        destination.append(descriptor("gwid", 1, "1-3"))
        delta = calculate_delta(source, destination)
        assert len(delta) == 1
        assert delta[0].range_set.to_representation() == "4-5"

        destination.append(descriptor("gwid", 2, "50-100"))
        delta = calculate_delta(source, destination)
        assert len(delta) == 1
        assert delta[0].range_set.to_representation() == "4-5"

        source.append(descriptor("gwid", 2, "1-49"))
        delta = calculate_delta(source, destination)
        assert len(delta) == 2

        source.append(descriptor("gwid", 3, "1-10"))
        destination.append(descriptor("gwid", 3, "3,5-8"))
        delta = calculate_delta(source, destination)
        assert len(delta) == 3
        assert delta[2].key == ("gwid", 3)
        assert delta[2].range_set.to_representation() == "1,2,4,9,10"

    def test_nothing_missing(self):
        """Test nothing missing."""
        source = [descriptor("gw", 1, "1-5")]
        destination = [descriptor("gw", 1, "1-10")]
        assert calculate_delta(source, destination) == []

    def test_owner_is_part_of_the_key(self):
        """Test owner is part of the key."""
        source = [descriptor("a", 1, "1-5")]
        destination = [descriptor("b", 1, "1-5")]
        delta = calculate_delta(source, destination)
        assert [d.key for d in delta] == [("a", 1)]

    def test_keeps_source_order(self):
        """Test keeps source order."""
        source = [descriptor("gw", 3, "1"), descriptor("gw", 1, "1"), descriptor("gw", 2, "1")]
        assert [d.log_id for d in calculate_delta(source, [])] == [3, 1, 2]


class RecordingTask(LogSyncTask):
    """Records the descriptors it is asked to write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.written = []

    def write_descriptor(self, descriptor, writer):
        self.written.append(descriptor)
        super().write_descriptor(descriptor, writer)


class TestWriteDelta:
    """Tests for writing events of a delta."""

    def test_writes_every_descriptor(self, local_store, client):
        """Test writes every descriptor."""
        local_store.put(make_events("gw", 1, [1, 2, 3]))
        local_store.put(make_events("gw", 2, [1]))
        task = RecordingTask(local_store, client, "auditlog")
        delta = [descriptor("gw", 1, "2-3"), descriptor("gw", 2, "1")]

        writer = io.StringIO()
        task.write_delta(delta, writer)

        assert task.written == delta
        lines = writer.getvalue().splitlines()
        assert lines == [e.to_representation() for e in local_store.get(delta[0])] + [
            e.to_representation() for e in local_store.get(delta[1])
        ]
        assert [Event.parse(line).id for line in lines] == [2, 3, 1]

    @pytest.mark.asyncio
    async def test_push_writes_only_the_delta(self, local_store, remote_store, client):
        """Test push writes only the delta."""
        local_store.put(make_events("gw", 1, range(1, 6)))
        remote_store.put(make_events("gw", 1, [1, 2, 3]))
        task = RecordingTask(local_store, client, "auditlog", mode=Mode.PUSH)

        result = await task.push()

        assert result.status == SyncStatus.SUCCESS
        assert [d.range_set.to_representation() for d in task.written] == ["4-5"]
        assert result.entries_pushed == 2


class TestPush:
    """Tests for pushing local events."""

    @pytest.mark.asyncio
    async def test_push_to_empty_remote(self, task, local_store, remote_store):
        """Test push to empty remote."""
        local_store.put(make_events("gw", 1, [1, 2, 3]))

        result = await task.push()

        assert result.status == SyncStatus.SUCCESS
        assert result.entries_pushed == 3
        assert remote_store.get_descriptor("gw", 1).range_set.to_representation() == "1-3"
        assert task.state == SyncState.DONE

    @pytest.mark.asyncio
    async def test_second_push_sends_nothing(self, task, local_store, remote_store):
        """Test second push sends nothing."""
        local_store.put(make_events("gw", 1, [1, 2, 3]))
        await task.push()

        result = await task.push()

        assert result.entries_pushed == 0
        assert remote_store.get_stats()["total_events"] == 3

    @pytest.mark.asyncio
    async def test_push_fills_gaps(self, task, local_store, remote_store):
        """Test push fills gaps."""
        local_store.put(make_events("gw", 1, range(1, 11)))
        remote_store.put(make_events("gw", 1, [1, 2, 5, 9]))

        result = await task.push()

        assert result.entries_pushed == 6
        assert remote_store.get_descriptor("gw", 1).range_set.to_representation() == "1-10"

    @pytest.mark.asyncio
    async def test_push_restricted_to_owner(self, local_store, remote_store, client):
        """Test push restricted to owner."""
        local_store.put(make_events("mine", 1, [1, 2]))
        local_store.put(make_events("other", 1, [1]))
        task = LogSyncTask(local_store, client, "auditlog", owner_id="mine")

        await task.push()

        assert [d.owner_id for d in remote_store.get_descriptors()] == ["mine"]

    @pytest.mark.asyncio
    async def test_push_offline(self, local_store):
        """Test push offline."""
        local_store.put(make_events("gw", 1, [1]))
        task = LogSyncTask(local_store, offline_client(), "auditlog")

        result = await task.push()

        assert result.status == SyncStatus.OFFLINE
        assert result.error
        assert task.state == SyncState.FAILED


class TestPull:
    """Tests for pulling remote events."""

    @pytest.mark.asyncio
    async def test_absent_local_log_pulls_everything(self, task, local_store, remote_store):
        """A log the local side never saw counts as empty, not as complete."""
        remote_store.put(make_events("gw", 5, [1, 2, 3]))
        assert local_store.find_descriptor("gw", 5) is None

        result = await task.pull()

        assert result.status == SyncStatus.SUCCESS
        assert result.entries_pulled == 3
        assert local_store.get_descriptor("gw", 5).range_set.to_representation() == "1-3"

    @pytest.mark.asyncio
    async def test_pull_multiple_logs(self, task, local_store, remote_store):
        """Test pull multiple logs."""
        remote_store.put(make_events("a", 1, range(1, 6)))
        remote_store.put(make_events("b", 2, [1, 2]))
        local_store.put(make_events("a", 1, [1, 2]))

        result = await task.pull()

        assert result.entries_pulled == 5
        assert local_store.get_descriptor("a", 1).range_set.to_representation() == "1-5"
        assert local_store.get_descriptor("b", 2).range_set.to_representation() == "1-2"
        pulled = local_store.get(descriptor("a", 1, "3"))[0]
        assert pulled.properties == {"n": "3"}

    @pytest.mark.asyncio
    async def test_pull_is_idempotent(self, task, local_store, remote_store):
        """Test pull is idempotent."""
        remote_store.put(make_events("gw", 1, [1, 2, 3]))

        await task.pull()
        result = await task.pull()

        assert result.status == SyncStatus.SUCCESS
        assert result.entries_pulled == 0
        assert local_store.get_stats()["total_events"] == 3

    @pytest.mark.asyncio
    async def test_failing_log_does_not_stop_others(self, task, local_store, remote_store):
        """Test failing log does not stop others."""
        remote_store.put(make_events("good", 1, [1, 2]))
        remote_store.put(make_events("bad", 1, [1, 2]))
        original_receive = task.client.receive

        async def receive(d):
            if d.owner_id == "bad":
                raise TransportError("receive returned HTTP 500", status_code=500)
            async for line in original_receive(d):
                yield line

        with patch.object(task.client, "receive", new=receive):
            result = await task.pull()

        assert result.status == SyncStatus.PARTIAL
        assert result.entries_pulled == 2
        assert local_store.find_descriptor("good", 1) is not None
        assert local_store.find_descriptor("bad", 1) is None

    @pytest.mark.asyncio
    async def test_truncated_stream_is_partial(self, task, local_store, remote_store):
        """Test truncated stream is partial."""
        remote_store.put(make_events("gw", 1, [1, 2, 3, 4]))

        async def receive(d):
            for event in make_events("gw", 1, [1, 2]):
                yield event.to_representation()

        with patch.object(task.client, "receive", new=receive):
            result = await task.pull()

        assert result.status == SyncStatus.PARTIAL
        assert result.entries_pulled == 2
        assert local_store.get_descriptor("gw", 1).range_set.to_representation() == "1-2"

    @pytest.mark.asyncio
    async def test_bad_lines_are_skipped(self, task, local_store, remote_store):
        """Test bad lines are skipped."""
        remote_store.put(make_events("gw", 1, [1, 2]))

        async def receive(d):
            yield "garbage in, garbage out!"
            for event in make_events("gw", 1, [1, 2]):
                yield event.to_representation()
            # not requested
            yield make_events("gw", 1, [7])[0].to_representation()
            yield make_events("other", 1, [1])[0].to_representation()

        with patch.object(task.client, "receive", new=receive):
            result = await task.pull()

        assert result.status == SyncStatus.SUCCESS
        assert result.entries_pulled == 2
        assert result.entries_skipped == 3
        assert local_store.find_descriptor("other", 1) is None

    @pytest.mark.asyncio
    async def test_remote_query_failure(self, task):
        """Test remote query failure."""
        with patch.object(
            task.client,
            "query",
            new=AsyncMock(side_effect=TransportError("query returned HTTP 500", 500)),
        ):
            result = await task.pull()

        assert result.status == SyncStatus.FAILED
        assert task.state == SyncState.FAILED

    @pytest.mark.asyncio
    async def test_remote_unavailable(self, task):
        """Test remote unavailable."""
        with patch.object(
            task.client,
            "query",
            new=AsyncMock(side_effect=RemoteUnavailableError("connection refused")),
        ):
            result = await task.pull()

        assert result.status == SyncStatus.OFFLINE


class TestPushPull:
    """Tests for bidirectional sync."""

    @pytest.mark.asyncio
    async def test_both_sides_converge(self, task, local_store, remote_store):
        """Test both sides converge."""
        local_store.put(make_events("gw", 1, [1, 2, 3]))
        remote_store.put(make_events("gw", 1, [1, 4, 5]))
        remote_store.put(make_events("gw", 2, [1]))

        result = await task.pushpull()

        assert result.status == SyncStatus.SUCCESS
        assert result.entries_pushed == 2
        assert result.entries_pulled == 3
        for store in (local_store, remote_store):
            assert store.get_descriptor("gw", 1).range_set.to_representation() == "1-5"
        assert local_store.get_descriptor("gw", 2).range_set.to_representation() == "1"


class TestLowestIds:
    """Tests for exchanging retention floors."""

    @pytest.mark.asyncio
    async def test_push_ids(self, task, local_store, remote_store):
        """Test push ids."""
        remote_store.put(make_events("gw", 1, range(1, 11)))
        local_store.set_lowest_id("gw", 1, 6)

        result = await task.push_ids()

        assert result.lowest_ids_pushed == 1
        assert remote_store.get_lowest_id("gw", 1) == 6
        assert remote_store.get_descriptor("gw", 1).range_set.to_representation() == "6-10"

    @pytest.mark.asyncio
    async def test_pull_ids(self, task, local_store, remote_store):
        """Test pull ids."""
        remote_store.set_lowest_id("gw", 1, 4)

        result = await task.pull_ids()

        assert result.lowest_ids_pulled == 1
        assert local_store.get_lowest_id("gw", 1) == 4

    @pytest.mark.asyncio
    async def test_execute_runs_ids_then_data(self, local_store, remote_store, client):
        """Test execute runs ids then data."""
        remote_store.set_lowest_id("gw", 1, 3)
        local_store.put(make_events("gw", 1, range(1, 6)))
        task = LogSyncTask(
            local_store, client, "auditlog", mode=Mode.PUSH, lowest_id_mode=Mode.PULL
        )

        result = await task.execute()

        assert result.status == SyncStatus.SUCCESS
        assert result.lowest_ids_pulled == 1
        # Events below the pulled floor were dropped before pushing
        assert result.entries_pushed == 3
        assert remote_store.get_descriptor("gw", 1).range_set.to_representation() == "3-5"


class TestScheduling:
    """Tests for execute() and the loop."""

    def test_mode_parse(self):
        """Test mode parse."""
        assert Mode.parse("PushPull") is Mode.PUSHPULL
        assert Mode.parse(Mode.PULL) is Mode.PULL
        with pytest.raises(ValueError):
            Mode.parse("sideways")

    @pytest.mark.asyncio
    async def test_execute_none_mode(self, local_store, client):
        """Test execute none mode."""
        task = LogSyncTask(local_store, client, "auditlog", mode=Mode.NONE)
        result = await task.execute()
        assert result.status == SyncStatus.SUCCESS
        assert task.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_passes_do_not_overlap(self, task):
        """Test passes do not overlap."""
        active = 0
        peak = 0

        async def slow_query(owner_id=None, log_id=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return []

        with patch.object(task.client, "query", new=slow_query):
            await asyncio.gather(task.execute(), task.execute(), task.pull())

        assert peak == 1

    @pytest.mark.asyncio
    async def test_failures_are_counted(self, local_store):
        """Test failures are counted."""
        task = LogSyncTask(local_store, offline_client(), "auditlog", mode=Mode.PULL)

        await task.execute()
        await task.execute()

        status = task.get_sync_status()
        assert status["consecutive_failures"] == 2
        assert status["last_sync"] is None
        assert status["last_result"]["status"] == "offline"

    @pytest.mark.asyncio
    async def test_run_loop_stops(self, task):
        """Test run loop stops."""
        stop_event = asyncio.Event()

        async def execute():
            stop_event.set()
            return SyncResult()

        with patch.object(task, "execute", new=AsyncMock(side_effect=execute)) as mock:
            await asyncio.wait_for(task.run_loop(60, stop_event), timeout=5)

        assert mock.await_count == 1


class TestLineBreaks:
    """Tests for values holding line separators the codec does not escape."""

    @pytest.mark.parametrize("separator", ["\u2028", "\x85", "\x0c", "\x1e"])
    @pytest.mark.asyncio
    async def test_push_keeps_value(self, task, local_store, remote_store, separator):
        """Test a pushed value arrives whole."""
        event = Event("gw", 1, 1, 1000, 1, {"msg": f"a{separator}b"})
        local_store.put([event])

        result = await task.push()

        assert result.status == SyncStatus.SUCCESS
        assert remote_store.get(descriptor("gw", 1, "1")) == [event]

    @pytest.mark.parametrize("separator", ["\u2028", "\x85", "\x0c", "\x1e"])
    @pytest.mark.asyncio
    async def test_pull_keeps_value(self, task, local_store, remote_store, separator):
        """Test a pulled value arrives whole."""
        event = Event(f"gw{separator}x", 1, 1, 1000, 1, {"msg": f"a{separator}b"})
        remote_store.put([event])

        result = await task.pull()

        assert result.status == SyncStatus.SUCCESS
        assert local_store.get(descriptor(event.owner_id, 1, "1")) == [event]

    @pytest.mark.asyncio
    async def test_receive_joins_lines_across_chunks(self, local_store):
        """Test a line split over several response chunks is read as one."""

        async def body():
            yield b"gw,1,1,0,1,msg,a\xe2\x80"
            yield b"\xa8b\r\ngw,1,"
            yield b"2,0,1\n"

        client = LogEndpointClient(
            "http://remote",
            "auditlog",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body())),
        )

        lines = [line async for line in client.receive(descriptor("gw", 1, "1-2"))]

        assert lines == ["gw,1,1,0,1,msg,a\u2028b", "gw,1,2,0,1"]


class TestCancellation:
    """Tests for cancelling a running pass."""

    @pytest.mark.asyncio
    async def test_cancelled_pull_keeps_applied_logs(self, task, local_store, remote_store):
        """Test cancelling mid-pull keeps finished logs and frees the task."""
        remote_store.put(make_events("a", 1, [1, 2, 3]))
        remote_store.put(make_events("b", 1, [1, 2]))
        streaming = asyncio.Event()
        original_receive = task.client.receive

        async def slow_receive(d):
            if d.owner_id == "b":
                streaming.set()
                await asyncio.sleep(3600)
            async for line in original_receive(d):
                yield line

        with patch.object(task.client, "receive", new=slow_receive):
            running = asyncio.create_task(task.pull())
            await asyncio.wait_for(streaming.wait(), timeout=5)
            running.cancel()
            with pytest.raises(asyncio.CancelledError):
                await running

        assert local_store.get_descriptor("a", 1).range_set.to_representation() == "1-3"
        assert local_store.find_descriptor("b", 1) is None

        result = await asyncio.wait_for(task.pull(), timeout=5)

        assert result.status == SyncStatus.SUCCESS
        assert result.entries_pulled == 2
        assert local_store.get_descriptor("b", 1).range_set.to_representation() == "1-2"
