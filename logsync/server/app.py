"""FastAPI application serving log channels and repository replication.

Every configured log channel gets the endpoints (``auditlog`` as example):

    GET  /auditlog/query        all descriptors
    GET  /auditlog/query?tid=a  descriptors of owner a
    GET  /auditlog/query?tid=a&logid=1
    GET  /auditlog/receive?tid=a&logid=1&range=1-5
    POST /auditlog/send
    GET  /auditlog/receiveids
    POST /auditlog/sendids

Bodies are ``text/plain``, one record per line. Malformed requests get a
400, storage failures a 500.
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from ..config import Config
from ..errors import InconsistentLogError, InvalidFormatError, StorageError
from ..feedback import Descriptor, Event, LowestID, codec
from ..feedback.event import parse_int
from ..ranges import FULL_SET, SortedRangeSet
from ..replication import ReplicationRepository
from ..store import LogStore

logger = logging.getLogger(__name__)


def _lines(records: list) -> PlainTextResponse:
    return PlainTextResponse("".join(f"{r.to_representation()}\n" for r in records))


def _owner_and_log(tid: str | None, logid: str | None) -> tuple[str | None, int | None]:
    """Decode the ``tid``/``logid`` parameters; a log id needs an owner."""
    if tid is None:
        if logid is not None:
            raise InvalidFormatError("A log id requires a target id")
        return None, None
    owner_id = codec.decode(tid)
    log_id = parse_int(logid, "log id", logid) if logid is not None else None
    return owner_id, log_id


def _log_router(name: str, store: LogStore) -> APIRouter:
    """Build the endpoints of one log channel."""
    router = APIRouter(prefix=f"/{name}")

    @router.get("/query")
    async def query(tid: str | None = None, logid: str | None = None):
        owner_id, log_id = _owner_and_log(tid, logid)
        if log_id is not None:
            return _lines([store.get_descriptor(owner_id, log_id)])
        return _lines(store.get_descriptors(owner_id))

    @router.get("/receive")
    async def receive(
        tid: str | None = None, logid: str | None = None, range: str | None = None
    ):
        owner_id, log_id = _owner_and_log(tid, logid)
        if log_id is not None:
            range_set = SortedRangeSet.parse(range) if range is not None else FULL_SET
            descriptors = [Descriptor(owner_id, log_id, range_set)]
        else:
            descriptors = store.get_descriptors(owner_id)

        events: list[Event] = []
        for descriptor in descriptors:
            events.extend(store.get(descriptor))
        return _lines(events)

    @router.post("/send")
    async def send(request: Request):
        body = (await request.body()).decode("utf-8")
        events = []
        malformed = 0
        for line in codec.split_lines(body):
            try:
                events.append(Event.parse(line))
            except InvalidFormatError:
                malformed += 1
                logger.warning(f"Could not construct event from string: {line!r}")

        try:
            added = store.put(events)
        except InconsistentLogError as e:
            logger.warning(f"[{name}] {e}")
            return PlainTextResponse(str(e), status_code=409)

        logger.debug(f"[{name}] Received {len(events)} event(s), {added} new")
        if added and getattr(store, "max_events", 0):
            store.clean()

        if malformed:
            return PlainTextResponse(
                "Could not construct a log event for all events received",
                status_code=400,
            )
        return PlainTextResponse("")

    @router.get("/receiveids")
    async def receive_ids(tid: str | None = None, logid: str | None = None):
        owner_id, log_id = _owner_and_log(tid, logid)
        lowest_ids = [
            lid
            for lid in store.get_lowest_ids(owner_id)
            if lid.lowest_id > 0 and (log_id is None or lid.log_id == log_id)
        ]
        return _lines(lowest_ids)

    @router.post("/sendids")
    async def send_ids(request: Request):
        body = (await request.body()).decode("utf-8")
        success = True
        for line in codec.split_lines(body):
            try:
                lid = LowestID.parse(line)
            except InvalidFormatError:
                success = False
                logger.warning(f"Could not construct lowest ID from string: {line!r}")
                continue
            store.set_lowest_id(lid.owner_id, lid.log_id, lid.lowest_id)

        if not success:
            return PlainTextResponse(
                "Could not set lowest IDs for all logs received", status_code=400
            )
        return PlainTextResponse("")

    return router


def _replication_router(repositories: list[ReplicationRepository]) -> APIRouter:
    """Build the replication endpoints over the given repositories."""
    router = APIRouter(prefix="/replication")

    @router.get("/query")
    async def query(customer: str | None = None, name: str | None = None):
        lines = []
        for repository in repositories:
            if customer is not None and repository.customer != customer:
                continue
            if name is not None and repository.name != name:
                continue
            lines.append(
                f"{repository.customer},{repository.name},"
                f"{repository.get_range().to_representation()}\n"
            )
        return PlainTextResponse("".join(lines))

    @router.get("/get")
    async def get(customer: str, name: str, version: str):
        for repository in repositories:
            if repository.key == (customer, name):
                break
        else:
            return PlainTextResponse("Unknown repository", status_code=404)

        number = parse_int(version, "version", version)
        if number <= 0:
            raise InvalidFormatError(f"Version must be greater than 0, was {number}")
        data = repository.get(number)
        if data is None:
            return PlainTextResponse(f"Unknown version {number}", status_code=404)
        return Response(content=data, media_type="application/octet-stream")

    return router


def create_app(
    config: Config,
    stores: dict[str, LogStore] | None = None,
    repositories: list[ReplicationRepository] | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration.
        stores: Log stores keyed by channel name; each gets its endpoints.
        repositories: Repositories served for replication.

    Returns:
        Configured FastAPI application.
    """
    stores = stores or {}
    repositories = repositories or []

    app = FastAPI(
        title="logsync",
        description="Log synchronization and repository replication endpoints",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.stores = stores
    app.state.repositories = repositories

    @app.exception_handler(InvalidFormatError)
    async def invalid_format_handler(request: Request, exc: InvalidFormatError):
        logger.warning(f"Bad request {request.url.path}: {exc}")
        return PlainTextResponse(f"Unable to interpret request: {exc}", status_code=400)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure serving {request.url.path}: {exc}")
        return PlainTextResponse("Unable to process request", status_code=500)

    for name, store in stores.items():
        app.include_router(_log_router(name, store))
    app.include_router(_replication_router(repositories))

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Get node status and per-channel statistics."""
        channels = {}
        for name, store in stores.items():
            get_stats = getattr(store, "get_stats", None)
            channels[name] = get_stats() if get_stats else {}

        return {
            "status": "ok",
            "node_name": config.node.name,
            "timestamp": datetime.now().isoformat(),
            "channels": channels,
            "repositories": [
                {"customer": r.customer, "name": r.name} for r in repositories
            ],
        }

    return app
