"""ReadApi: REST and WebSocket endpoints of the price service.

REST app:
    - GET /live                    always 200
    - GET /ready                   200 once ready, 503 before
    - GET /api/price_feed_ids      ids of all cached feeds
    - GET /api/latest_price_feeds  latest price of ``ids[]``
    - GET /api/latest_vaas         base64 attestations of ``ids[]``

Stream app:
    - WS /ws   ``{"type": "subscribe" | "unsubscribe", "ids": [...]}``

Every price read goes through the readiness gate; while it is closed the
REST routes answer 503 and subscriptions are refused.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .errors import NotReadyError
from .PriceUpdate import FeedId, normalize_feed_id

if TYPE_CHECKING:
    from .FeedCache import FeedCache
    from .ReadinessGate import ReadinessGate
    from .SubscriberHub import Subscription, SubscriberHub

logger = logging.getLogger(__name__)


def _parse_ids(raw_ids: list[str]) -> tuple[list[FeedId], list[str]]:
    """Split requested ids into normalized valid ids and invalid inputs."""
    valid: list[FeedId] = []
    invalid: list[str] = []
    for raw in raw_ids:
        try:
            valid.append(normalize_feed_id(raw))
        except ValueError:
            invalid.append(raw)
    return valid, invalid


def create_rest_app(hub: SubscriberHub, cache: FeedCache, gate: ReadinessGate) -> FastAPI:
    """Build the REST application.

    :param hub: Hub serving snapshot reads.
    :param cache: Cache listed by ``/api/price_feed_ids``.
    :param gate: Readiness gate reported by ``/ready``.
    :returns: FastAPI app.
    """
    app = FastAPI(title="Price Service", docs_url=None, redoc_url=None)

    @app.exception_handler(NotReadyError)
    async def not_ready_handler(request: Request, exc: NotReadyError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.get("/live")
    async def live() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = gate.is_ready()
        return JSONResponse(
            status_code=200 if is_ready else 503,
            content={"ready": is_ready, "feeds": len(cache)},
        )

    @app.get("/api/price_feed_ids")
    async def price_feed_ids() -> list[str]:
        gate.require_ready()
        return cache.feed_ids()

    def _lookup(raw_ids: list[str], ignore_missing: bool) -> list[Any] | JSONResponse:
        ids, invalid = _parse_ids(raw_ids)
        if invalid:
            return JSONResponse(
                status_code=400, content={"detail": f"Invalid price ids: {invalid}"}
            )
        snapshot = hub.snapshot(ids)
        missing = [feed_id for feed_id, entry in snapshot.items() if entry is None]
        if missing and not ignore_missing:
            return JSONResponse(
                status_code=404, content={"detail": f"Price ids not found: {missing}"}
            )
        return [entry for entry in snapshot.values() if entry is not None]

    @app.get("/api/latest_price_feeds", response_model=None)
    async def latest_price_feeds(
        ids: list[str] = Query(default=[], alias="ids[]"),
        binary: bool = False,
        ignore_missing: bool = False,
    ) -> Any:
        entries = _lookup(ids, ignore_missing)
        if isinstance(entries, JSONResponse):
            return entries
        return [entry.latest.to_price_feed(binary=binary) for entry in entries]

    @app.get("/api/latest_vaas", response_model=None)
    async def latest_vaas(
        ids: list[str] = Query(default=[], alias="ids[]"),
    ) -> Any:
        entries = _lookup(ids, ignore_missing=False)
        if isinstance(entries, JSONResponse):
            return entries
        return [
            base64.b64encode(entry.latest.vaa).decode("ascii")
            for entry in entries
            if entry.latest.vaa is not None
        ]

    return app


async def _forward(websocket: WebSocket, subscription: Subscription, options: dict[str, Any]) -> None:
    async for update in subscription:
        price_feed = update.to_price_feed(binary=options["binary"])
        await websocket.send_json({"type": "price_update", "price_feed": price_feed})
    # Subscription closed by the hub on shutdown.
    with contextlib.suppress(RuntimeError):
        await websocket.close()


def create_stream_app(hub: SubscriberHub) -> FastAPI:
    """Build the WebSocket streaming application.

    :param hub: Hub handling subscriptions.
    :returns: FastAPI app.
    """
    app = FastAPI(title="Price Service Stream", docs_url=None, redoc_url=None)

    @app.websocket("/ws")
    async def stream(websocket: WebSocket) -> None:
        await websocket.accept()
        subscriber_id = uuid.uuid4().hex
        sender: asyncio.Task | None = None
        # Shared with the sender; a later subscribe may switch binary on.
        options: dict[str, Any] = {"binary": False}

        async def reply(error: str | None = None) -> None:
            message: dict[str, Any] = {
                "type": "response",
                "status": "error" if error else "success",
            }
            if error:
                message["error"] = error
            await websocket.send_json(message)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                    kind = message["type"]
                    ids, invalid = _parse_ids(list(message.get("ids", [])))
                except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
                    await reply(f"Invalid message: {e!r}")
                    continue
                if invalid:
                    await reply(f"Invalid price ids: {invalid}")
                    continue

                if kind == "subscribe":
                    options["binary"] = options["binary"] or bool(message.get("binary", False))
                    try:
                        subscription = hub.subscribe(subscriber_id, ids)
                    except NotReadyError as e:
                        await reply(str(e))
                        continue
                    if sender is None:
                        sender = asyncio.create_task(_forward(websocket, subscription, options))
                    await reply()
                elif kind == "unsubscribe":
                    hub.unsubscribe(subscriber_id, ids)
                    await reply()
                else:
                    await reply(f"Unknown message type {kind!r}")
        except WebSocketDisconnect:
            logger.debug(f"Subscriber {subscriber_id} disconnected")
        finally:
            hub.unsubscribe(subscriber_id)
            if sender is not None:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)

    return app
