"""Log synchronization task.

Compares the local store with a remote log endpoint and moves whatever is
missing on either side. A pass is:

    IDLE -> FETCH_LOCAL_DESCRIPTORS -> FETCH_REMOTE_DESCRIPTORS -> COMPUTE_DELTA
         -> STREAM_ENTRIES -> APPLY_TO_STORE -> DONE

and ends in FAILED when the descriptors cannot be fetched or nothing could be
moved. A failing log while pulling does not stop the other logs; the pass
then reports PARTIAL.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, TextIO

from ..errors import (
    InconsistentLogError,
    InvalidFormatError,
    RemoteUnavailableError,
    StorageError,
    TransportError,
)
from ..feedback import Descriptor, Event, LowestID
from ..store import LogStore
from .client import LogEndpointClient
from .delta import calculate_delta

logger = logging.getLogger(__name__)


class Mode(Enum):
    """Direction in which a task moves data."""

    NONE = "none"
    PUSH = "push"
    PULL = "pull"
    PUSHPULL = "pushpull"

    @classmethod
    def parse(cls, value: "str | Mode") -> "Mode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid sync mode {value!r}, expected one of "
                f"{', '.join(m.value for m in cls)}"
            ) from None


class SyncState(Enum):
    """Where a sync pass currently is."""

    IDLE = "idle"
    FETCH_LOCAL_DESCRIPTORS = "fetch_local_descriptors"
    FETCH_REMOTE_DESCRIPTORS = "fetch_remote_descriptors"
    COMPUTE_DELTA = "compute_delta"
    STREAM_ENTRIES = "stream_entries"
    APPLY_TO_STORE = "apply_to_store"
    DONE = "done"
    FAILED = "failed"


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some logs synced
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


# Worse outcomes win when a pass combines several steps
_SEVERITY = {
    SyncStatus.SUCCESS: 0,
    SyncStatus.PARTIAL: 1,
    SyncStatus.OFFLINE: 2,
    SyncStatus.FAILED: 3,
}


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus = SyncStatus.SUCCESS
    entries_pushed: int = 0
    entries_pulled: int = 0
    entries_skipped: int = 0
    lowest_ids_pushed: int = 0
    lowest_ids_pulled: int = 0
    error: str | None = None
    timestamp: datetime | None = None

    def degrade(self, status: SyncStatus, error: str | None = None) -> None:
        """Record a problem, keeping the worst status seen so far."""
        if _SEVERITY[status] > _SEVERITY[self.status]:
            self.status = status
        if error:
            self.error = error if not self.error else f"{self.error}; {error}"

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "entries_pushed": self.entries_pushed,
            "entries_pulled": self.entries_pulled,
            "entries_skipped": self.entries_skipped,
            "lowest_ids_pushed": self.lowest_ids_pushed,
            "lowest_ids_pulled": self.lowest_ids_pulled,
            "error": self.error,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class LogSyncTask:
    """Synchronizes one local log channel with a remote endpoint.

    Supports:
    - Push: send local events the remote lacks
    - Pull: fetch remote events the local store lacks
    - Lowest ids: exchange retention floors, in their own direction

    Passes of one task never overlap. Nothing is retried within a pass; a
    later pass simply recomputes the delta.
    """

    def __init__(
        self,
        store: LogStore,
        client: LogEndpointClient,
        name: str,
        mode: Mode = Mode.PUSH,
        lowest_id_mode: Mode = Mode.NONE,
        owner_id: str | None = None,
    ):
        """Initialize the task.

        Args:
            store: Local log store.
            client: Client for the remote endpoint.
            name: Name of the log channel, used in log messages.
            mode: Direction for events.
            lowest_id_mode: Direction for lowest ids.
            owner_id: Restrict the task to one owner's logs (a target syncing
                its own logs); None syncs every owner.
        """
        self.store = store
        self.client = client
        self.name = name
        self.mode = Mode.parse(mode)
        self.lowest_id_mode = Mode.parse(lowest_id_mode)
        self.owner_id = owner_id
        self.state = SyncState.IDLE
        self._lock = asyncio.Lock()
        self._last_sync: datetime | None = None
        self._last_result: SyncResult | None = None
        self._consecutive_failures = 0

    def _set_state(self, state: SyncState) -> None:
        logger.debug(f"[{self.name}] {self.state.value} -> {state.value}")
        self.state = state

    # ==================== Events ====================

    async def push(self) -> SyncResult:
        """Send local events the remote is missing."""
        async with self._lock:
            return await self._synchronize(push=True, pull=False)

    async def pull(self) -> SyncResult:
        """Fetch remote events the local store is missing."""
        async with self._lock:
            return await self._synchronize(push=False, pull=True)

    async def pushpull(self) -> SyncResult:
        """Push, then pull, against one snapshot of both sides."""
        async with self._lock:
            return await self._synchronize(push=True, pull=True)

    async def _synchronize(self, push: bool, pull: bool) -> SyncResult:
        result = SyncResult()
        self._set_state(SyncState.IDLE)

        self._set_state(SyncState.FETCH_LOCAL_DESCRIPTORS)
        try:
            local = self.store.get_descriptors(self.owner_id)
        except StorageError as e:
            logger.error(f"[{self.name}] Unable to read local descriptors: {e}")
            return self._fail(result, SyncStatus.FAILED, str(e))

        self._set_state(SyncState.FETCH_REMOTE_DESCRIPTORS)
        try:
            remote = await self.client.query(self.owner_id)
        except RemoteUnavailableError as e:
            logger.warning(f"[{self.name}] Remote not available: {e}")
            return self._fail(result, SyncStatus.OFFLINE, str(e))
        except TransportError as e:
            logger.error(f"[{self.name}] Unable to query remote descriptors: {e}")
            return self._fail(result, SyncStatus.FAILED, str(e))

        if push:
            await self._do_push(local, remote, result)
        if pull:
            await self._do_pull(local, remote, result)

        result.timestamp = datetime.now()
        if result.status in (SyncStatus.FAILED, SyncStatus.OFFLINE):
            self._set_state(SyncState.FAILED)
        else:
            self._set_state(SyncState.DONE)
        return result

    def _fail(self, result: SyncResult, status: SyncStatus, error: str) -> SyncResult:
        result.degrade(status, error)
        result.timestamp = datetime.now()
        self._set_state(SyncState.FAILED)
        return result

    async def _do_push(
        self, local: list[Descriptor], remote: list[Descriptor], result: SyncResult
    ) -> None:
        self._set_state(SyncState.COMPUTE_DELTA)
        delta = calculate_delta(local, remote)
        if not delta:
            logger.debug(f"[{self.name}] Nothing to push")
            return

        self._set_state(SyncState.STREAM_ENTRIES)
        buffer = io.StringIO()
        try:
            self.write_delta(delta, buffer)
        except StorageError as e:
            logger.error(f"[{self.name}] Unable to read events to push: {e}")
            result.degrade(SyncStatus.FAILED, str(e))
            return

        body = buffer.getvalue()
        self._set_state(SyncState.APPLY_TO_STORE)
        try:
            await self.client.send(body, self.owner_id)
        except RemoteUnavailableError as e:
            logger.warning(f"[{self.name}] Could not push, remote not available: {e}")
            result.degrade(SyncStatus.OFFLINE, str(e))
            return
        except TransportError as e:
            logger.warning(f"[{self.name}] Could not push log: {e}")
            result.degrade(SyncStatus.FAILED, str(e))
            return

        result.entries_pushed += body.count("\n")
        logger.debug(f"[{self.name}] Pushed {result.entries_pushed} event(s) in {len(delta)} log(s)")

    async def _do_pull(
        self, local: list[Descriptor], remote: list[Descriptor], result: SyncResult
    ) -> None:
        self._set_state(SyncState.COMPUTE_DELTA)
        delta = calculate_delta(remote, local)
        if not delta:
            logger.debug(f"[{self.name}] Nothing to pull")
            return

        failed = 0
        for descriptor in delta:
            if not await self._pull_descriptor(descriptor, result):
                failed += 1

        if failed == len(delta) and result.entries_pulled == 0:
            result.degrade(SyncStatus.FAILED)
        elif failed:
            result.degrade(SyncStatus.PARTIAL)

    async def _pull_descriptor(self, descriptor: Descriptor, result: SyncResult) -> bool:
        """Fetch and store one log's missing events. Returns False on failure."""
        self._set_state(SyncState.STREAM_ENTRIES)
        events: list[Event] = []
        try:
            async for line in self.client.receive(descriptor):
                try:
                    event = Event.parse(line)
                except InvalidFormatError as e:
                    logger.debug(f"[{self.name}] Skipping malformed event: {e}")
                    result.entries_skipped += 1
                    continue
                if (
                    event.owner_id != descriptor.owner_id
                    or event.log_id != descriptor.log_id
                    or event.id not in descriptor.range_set
                ):
                    logger.debug(f"[{self.name}] Skipping unrequested event {event.key}")
                    result.entries_skipped += 1
                    continue
                events.append(event)
        except TransportError as e:
            logger.warning(f"[{self.name}] Could not pull log {descriptor.key}: {e}")
            result.degrade(SyncStatus.PARTIAL, str(e))
            return False

        self._set_state(SyncState.APPLY_TO_STORE)
        try:
            result.entries_pulled += self.store.put(events)
        except InconsistentLogError as e:
            logger.error(f"[{self.name}] Conflicting events in log {descriptor.key}: {e}")
            result.degrade(SyncStatus.PARTIAL, str(e))
            return False
        except StorageError as e:
            logger.error(f"[{self.name}] Unable to store log {descriptor.key}: {e}")
            result.degrade(SyncStatus.PARTIAL, str(e))
            return False

        received = len({event.id for event in events})
        if received < descriptor.range_set.count:
            logger.warning(
                f"[{self.name}] Log {descriptor.key} truncated: received {received} "
                f"of {descriptor.range_set.count} event(s)"
            )
            result.degrade(SyncStatus.PARTIAL)
        return True

    def write_delta(self, descriptors: list[Descriptor], writer: TextIO) -> None:
        """Write the events of every descriptor, one line each."""
        for descriptor in descriptors:
            self.write_descriptor(descriptor, writer)
        writer.flush()

    def write_descriptor(self, descriptor: Descriptor, writer: TextIO) -> None:
        """Write the locally stored events covered by ``descriptor``."""
        for event in self.store.get(descriptor):
            writer.write(event.to_representation() + "\n")

    # ==================== Lowest ids ====================

    async def push_ids(self) -> SyncResult:
        """Send local retention floors to the remote."""
        async with self._lock:
            return await self._synchronize_ids(push=True, pull=False)

    async def pull_ids(self) -> SyncResult:
        """Adopt the remote's retention floors."""
        async with self._lock:
            return await self._synchronize_ids(push=False, pull=True)

    async def pushpull_ids(self) -> SyncResult:
        async with self._lock:
            return await self._synchronize_ids(push=True, pull=True)

    async def _synchronize_ids(self, push: bool, pull: bool) -> SyncResult:
        result = SyncResult()
        if push:
            await self._do_push_ids(result)
        if pull:
            await self._do_pull_ids(result)
        result.timestamp = datetime.now()
        return result

    async def _do_push_ids(self, result: SyncResult) -> None:
        try:
            lowest_ids = self.store.get_lowest_ids(self.owner_id)
        except StorageError as e:
            logger.error(f"[{self.name}] Unable to read lowest ids: {e}")
            result.degrade(SyncStatus.FAILED, str(e))
            return

        lines = [f"{lid.to_representation()}\n" for lid in lowest_ids if lid.lowest_id > 0]
        if not lines:
            return
        try:
            await self.client.send_lowest_ids("".join(lines), self.owner_id)
        except RemoteUnavailableError as e:
            logger.warning(f"[{self.name}] Could not push lowest ids, remote not available: {e}")
            result.degrade(SyncStatus.OFFLINE, str(e))
            return
        except TransportError as e:
            logger.warning(f"[{self.name}] Could not push lowest ids: {e}")
            result.degrade(SyncStatus.FAILED, str(e))
            return
        result.lowest_ids_pushed += len(lines)

    async def _do_pull_ids(self, result: SyncResult) -> None:
        try:
            lines = await self.client.query_lowest_ids(self.owner_id)
        except RemoteUnavailableError as e:
            logger.warning(f"[{self.name}] Could not pull lowest ids, remote not available: {e}")
            result.degrade(SyncStatus.OFFLINE, str(e))
            return
        except TransportError as e:
            logger.warning(f"[{self.name}] Could not pull lowest ids: {e}")
            result.degrade(SyncStatus.FAILED, str(e))
            return

        for line in lines:
            try:
                lid = LowestID.parse(line)
                self.store.set_lowest_id(lid.owner_id, lid.log_id, lid.lowest_id)
            except InvalidFormatError as e:
                logger.debug(f"[{self.name}] Skipping malformed lowest id: {e}")
                result.entries_skipped += 1
                continue
            except StorageError as e:
                logger.error(f"[{self.name}] Unable to store lowest id {line!r}: {e}")
                result.degrade(SyncStatus.PARTIAL, str(e))
                continue
            result.lowest_ids_pulled += 1

    # ==================== Scheduling ====================

    async def execute(self) -> SyncResult:
        """Run one scheduled pass: lowest ids first, then events.

        Returns:
            The result of the event sync, carrying the lowest id counts.
        """
        async with self._lock:
            ids_result = None
            if self.lowest_id_mode is not Mode.NONE:
                ids_result = await self._synchronize_ids(
                    push=self.lowest_id_mode in (Mode.PUSH, Mode.PUSHPULL),
                    pull=self.lowest_id_mode in (Mode.PULL, Mode.PUSHPULL),
                )
                if not ids_result.ok:
                    logger.warning(
                        f"[{self.name}] Unable to ({self.lowest_id_mode.value}) "
                        f"synchronize lowest ids: {ids_result.error}"
                    )

            if self.mode is Mode.NONE:
                result = SyncResult(timestamp=datetime.now())
            else:
                result = await self._synchronize(
                    push=self.mode in (Mode.PUSH, Mode.PUSHPULL),
                    pull=self.mode in (Mode.PULL, Mode.PUSHPULL),
                )
                if not result.ok:
                    logger.warning(
                        f"[{self.name}] Unable to ({self.mode.value}) fully "
                        f"synchronize log: {result.error}"
                    )

            if ids_result is not None:
                result.lowest_ids_pushed = ids_result.lowest_ids_pushed
                result.lowest_ids_pulled = ids_result.lowest_ids_pulled

            if result.status in (SyncStatus.FAILED, SyncStatus.OFFLINE):
                self._consecutive_failures += 1
            else:
                self._consecutive_failures = 0
                self._last_sync = result.timestamp
            self._last_result = result

            logger.info(
                f"Sync [{self.name}]: {result.status.value}, "
                f"pushed={result.entries_pushed}, "
                f"pulled={result.entries_pulled}",
                extra={"channel": self.name},
            )
            return result

    async def run_loop(
        self,
        interval_seconds: float = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run :meth:`execute` periodically.

        Args:
            interval_seconds: Seconds between passes.
            stop_event: Event to signal loop should stop.
        """
        logger.info(
            f"Starting sync loop for {self.name} with {interval_seconds}s interval",
            extra={"channel": self.name},
        )

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                await self.execute()
            except Exception as e:
                logger.error(f"Sync loop error ({self.name}): {e}")
                self._consecutive_failures += 1

            # Back off while the remote keeps failing
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync of {self.name} for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info(f"Sync loop for {self.name} stopped", extra={"channel": self.name})

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful pass."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        return {
            "name": self.name,
            "remote_url": self.client.base_url,
            "mode": self.mode.value,
            "lowest_id_mode": self.lowest_id_mode.value,
            "state": self.state.value,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "consecutive_failures": self._consecutive_failures,
        }
