"""HTTP client for one remote log endpoint.

Speaks the line-based protocol served by :mod:`logsync.server`:

    GET  <endpoint>/query       descriptor lines
    GET  <endpoint>/receive     event lines for one descriptor
    POST <endpoint>/send        event lines
    GET  <endpoint>/receiveids  lowest id lines
    POST <endpoint>/sendids     lowest id lines

Requests are made once; retrying is up to the scheduler.
"""

import logging
from contextlib import contextmanager
from typing import AsyncIterator, Iterator

import httpx

from ..errors import InvalidFormatError, RemoteUnavailableError, TransportError
from ..feedback import Descriptor, codec

logger = logging.getLogger(__name__)

COMMAND_QUERY = "query"
COMMAND_SEND = "send"
COMMAND_RECEIVE = "receive"
COMMAND_SEND_IDS = "sendids"
COMMAND_RECEIVE_IDS = "receiveids"

TARGETID_KEY = "tid"
LOGID_KEY = "logid"
RANGE_KEY = "range"

TEXT_HEADERS = {"Content-Type": "text/plain; charset=utf-8"}


class LogEndpointClient:
    """Client for the log endpoint ``<base_url>/<endpoint>``."""

    def __init__(
        self,
        base_url: str,
        endpoint: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL of the remote (e.g., "http://server:8080").
            endpoint: Name of the log channel (e.g., "auditlog").
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, used to talk to an
                in-process app.
        """
        self.base_url = base_url
        self.endpoint = endpoint.strip("/")
        self.timeout = timeout
        self.transport = transport

    def _url(self, command: str) -> str:
        return f"{self.base_url.rstrip('/')}/{self.endpoint}/{command}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _owner_params(owner_id: str | None, log_id: int | None = None) -> dict[str, str]:
        params = {}
        if owner_id is not None:
            params[TARGETID_KEY] = codec.encode(owner_id)
            if log_id is not None:
                params[LOGID_KEY] = str(log_id)
        return params

    @contextmanager
    def _translate_errors(self, command: str) -> Iterator[None]:
        try:
            yield
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise RemoteUnavailableError(
                f"Remote {self.base_url} unavailable for {self.endpoint}/{command}: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.endpoint}/{command} failed: {e}") from e

    def _check(self, response: httpx.Response, command: str) -> None:
        if response.status_code != 200:
            raise TransportError(
                f"{self.endpoint}/{command} returned HTTP {response.status_code} "
                f"{response.reason_phrase}",
                status_code=response.status_code,
            )

    async def _get_lines(self, command: str, params: dict[str, str]) -> list[str]:
        with self._translate_errors(command):
            async with self._client() as client:
                response = await client.get(self._url(command), params=params)
        self._check(response, command)
        return codec.split_lines(response.text)

    async def _post_lines(self, command: str, body: str, params: dict[str, str]) -> None:
        with self._translate_errors(command):
            async with self._client() as client:
                response = await client.post(
                    self._url(command),
                    params=params,
                    content=body.encode("utf-8"),
                    headers=TEXT_HEADERS,
                )
        self._check(response, command)

    async def query(
        self, owner_id: str | None = None, log_id: int | None = None
    ) -> list[Descriptor]:
        """Fetch the remote's descriptors, optionally for one owner or log.

        Raises:
            TransportError: If the request fails or a line is malformed.
        """
        lines = await self._get_lines(COMMAND_QUERY, self._owner_params(owner_id, log_id))
        descriptors = []
        for line in lines:
            try:
                descriptors.append(Descriptor.parse(line))
            except InvalidFormatError as e:
                raise TransportError(
                    f"Received malformed descriptor from {self.endpoint}/query: {line!r}"
                ) from e
        logger.debug(f"Remote {self.endpoint} reports {len(descriptors)} log(s)")
        return descriptors

    async def receive(self, descriptor: Descriptor) -> AsyncIterator[str]:
        """Stream the remote's event lines for the ids in ``descriptor``."""
        params = {
            TARGETID_KEY: codec.encode(descriptor.owner_id),
            LOGID_KEY: str(descriptor.log_id),
            RANGE_KEY: descriptor.range_set.to_representation(),
        }
        with self._translate_errors(COMMAND_RECEIVE):
            async with self._client() as client:
                async with client.stream("GET", self._url(COMMAND_RECEIVE), params=params) as response:
                    self._check(response, COMMAND_RECEIVE)
                    pending = ""
                    async for chunk in response.aiter_text():
                        *lines, pending = (pending + chunk).split("\n")
                        for line in codec.split_lines("\n".join(lines)):
                            yield line
                    for line in codec.split_lines(pending):
                        yield line

    async def send(self, body: str, owner_id: str | None = None) -> None:
        """Post event lines to the remote."""
        await self._post_lines(COMMAND_SEND, body, self._owner_params(owner_id))

    async def query_lowest_ids(self, owner_id: str | None = None) -> list[str]:
        """Fetch the remote's lowest id lines."""
        return await self._get_lines(COMMAND_RECEIVE_IDS, self._owner_params(owner_id))

    async def send_lowest_ids(self, body: str, owner_id: str | None = None) -> None:
        """Post lowest id lines to the remote."""
        await self._post_lines(COMMAND_SEND_IDS, body, self._owner_params(owner_id))
