"""Pull-only replication of versioned repositories from a remote."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

import httpx

from ..errors import InvalidFormatError, LogSyncError, RemoteUnavailableError, TransportError
from ..feedback import codec
from ..ranges import SortedRangeSet
from .repository import ReplicationRepository

logger = logging.getLogger(__name__)


@dataclass
class ReplicationResult:
    """Outcome of replicating one repository."""

    customer: str
    name: str
    fetched: list[int] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RepositoryReplicationTask:
    """Fetches versions a remote has and the local repositories lack.

    For each registered repository the remote is asked for its range with
    ``/replication/query?customer=..&name=..``. Only the text after the last
    comma of the first response line is used as the remote range. Missing
    versions are fetched with ``/replication/get`` in ascending order. A
    repository with a ``limit`` only considers the ``limit`` newest versions
    known on either side.
    """

    def __init__(
        self,
        remote_url: str | Callable[[], str | None],
        repositories: list[ReplicationRepository] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the task.

        Args:
            remote_url: Base URL of the remote, or a callable returning it
                (None when no remote is known right now).
            repositories: Repositories to replicate.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport.
        """
        self.remote_url = remote_url
        self.timeout = timeout
        self.transport = transport
        self._repositories: dict[tuple[str, str], ReplicationRepository] = {}
        for repository in repositories or []:
            self.add(repository)

    def add(self, repository: ReplicationRepository) -> None:
        self._repositories[repository.key] = repository

    def remove(self, repository: ReplicationRepository) -> None:
        self._repositories.pop(repository.key, None)

    @property
    def repositories(self) -> list[ReplicationRepository]:
        return list(self._repositories.values())

    def _discover(self) -> str | None:
        if callable(self.remote_url):
            return self.remote_url()
        return self.remote_url

    async def run(self) -> list[ReplicationResult]:
        """Replicate every registered repository once."""
        host = self._discover()
        if not host:
            logger.warning("Unable to replicate repositories - no remote available")
            return []

        results = []
        async with httpx.AsyncClient(
            base_url=host.rstrip("/"), timeout=self.timeout, transport=self.transport
        ) as client:
            for repository in self.repositories:
                result = ReplicationResult(repository.customer, repository.name)
                try:
                    await self._replicate(client, repository, result)
                except (LogSyncError, ValueError) as e:
                    logger.warning(
                        f"Could not sync repository for customer: {repository.customer}, "
                        f"name: {repository.name}, because: {e}"
                    )
                    result.error = str(e)
                results.append(result)

        fetched = sum(len(r.fetched) for r in results)
        logger.info(f"Replication: {len(results)} repositories, fetched={fetched}")
        return results

    async def _request(
        self, client: httpx.AsyncClient, path: str, params: dict[str, str]
    ) -> httpx.Response:
        try:
            response = await client.get(path, params=params)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise RemoteUnavailableError(f"Remote unavailable: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(str(e)) from e

        if response.status_code != 200:
            raise TransportError(
                f"{response.reason_phrase} ({response.status_code})",
                status_code=response.status_code,
            )
        return response

    async def _replicate(
        self,
        client: httpx.AsyncClient,
        repository: ReplicationRepository,
        result: ReplicationResult,
    ) -> None:
        params = {"customer": repository.customer, "name": repository.name}
        response = await self._request(client, "/replication/query", params)

        lines = codec.split_lines(response.text)
        if not lines:
            raise InvalidFormatError("Error parsing remote range: empty response")
        line = lines[0]
        i = line.rfind(",")
        if i <= 0:
            logger.debug(f"No range in replication response: {line!r}")
            return
        remote_range = SortedRangeSet.parse(line[i + 1:])
        local_range = repository.get_range()

        for version in self._wanted_versions(local_range, remote_range, repository.limit):
            data = await self._request(
                client, "/replication/get", {**params, "version": str(version)}
            )
            repository.put(data.content, version)
            result.fetched.append(version)

        if result.fetched:
            logger.debug(
                f"Replicated {repository.customer}/{repository.name}: "
                f"versions {SortedRangeSet.from_values(result.fetched)}"
            )

    @staticmethod
    def _wanted_versions(
        local_range: SortedRangeSet, remote_range: SortedRangeSet, limit: int | None
    ) -> list[int]:
        if limit is None:
            return list(local_range.diff_dest(remote_range))

        # Only the `limit` newest versions known on either side count
        wanted = []
        for version in reversed(local_range.union(remote_range)):
            if limit <= 0:
                break
            if version not in local_range:
                wanted.append(version)
            limit -= 1
        wanted.reverse()
        return wanted

    async def run_loop(
        self,
        interval_seconds: float = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run :meth:`run` periodically until ``stop_event`` is set."""
        logger.info(f"Starting replication loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                await self.run()
            except Exception as e:
                logger.error(f"Replication loop error: {e}")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(interval_seconds)

        logger.info("Replication loop stopped")
