"""HTTP listener for the hub's home automation postbacks.

The hub POSTs to the URL registered with ``HubClient.enable_postback``. The
body is base64 encoded JSON: either a list of motion records, or an object
describing a configuration mismatch, which is only logged.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import socket
from collections.abc import Awaitable, Callable

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import TypeAdapter, ValidationError

from pv2mqtt.api_types import HomeAutomationRecord
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.structs import BridgeSettings, HubEventBatch

logger = get_logger(__name__)

EventSink = Callable[[HubEventBatch], Awaitable[None]]

_records = TypeAdapter(list[HomeAutomationRecord])


def decode_postback(body: bytes) -> object:
    """base64 then JSON; raises ValueError when either layer is malformed."""
    try:
        raw = base64.b64decode(body, validate=True)
        return json.loads(raw)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        msg = f"postback body is not base64 encoded JSON: {exc}"
        raise ValueError(msg) from exc


def create_app(sink: EventSink) -> FastAPI:
    """Build the postback app; every accepted batch is handed to ``sink``."""
    app = FastAPI(title="pv2mqtt postback", docs_url=None, redoc_url=None)

    @app.post("/postback/{serial}")
    async def postback(serial: str, request: Request) -> dict[str, bool]:
        lp = "postback:"
        body = await request.body()
        try:
            data = decode_postback(body.strip())
        except ValueError as exc:
            logger.warning("%s Rejecting postback for %s: %s", lp, serial, exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if isinstance(data, dict):
            logger.warning(
                "%s Hub %s reports a home automation configuration mismatch",
                lp,
                serial,
                extra={"notice": data},
            )
            return {"ok": True}

        try:
            records = _records.validate_python(data)
        except ValidationError as exc:
            logger.warning("%s Invalid records from hub %s: %s", lp, serial, exc.errors()[0]["msg"])
            raise HTTPException(status_code=400, detail="invalid home automation records") from exc

        logger.debug("%s %d records from hub %s", lp, len(records), serial)
        await sink(HubEventBatch(serial=serial, records=records))
        return {"ok": True}

    return app


def local_addr_for(peer: str) -> str:
    """Local address of the interface that routes to ``peer``.

    Connecting a UDP socket sends nothing; it only selects the route.
    """
    family = socket.AF_INET6 if ":" in peer else socket.AF_INET
    with socket.socket(family, socket.SOCK_DGRAM) as sock:
        sock.connect((peer, 80))
        return sock.getsockname()[0]


class PostbackServer:
    """Runs the postback app under uvicorn."""

    lp: str = "PostbackServer:"

    def __init__(self, settings: BridgeSettings, sink: EventSink) -> None:
        self.settings: BridgeSettings = settings
        self.app: FastAPI = create_app(sink)
        self.uvi_server: uvicorn.Server = uvicorn.Server(
            config=uvicorn.Config(
                self.app,
                host=settings.postback_bind,
                port=settings.postback_port,
                log_config={
                    "version": 1,
                    "disable_existing_loggers": False,
                },
                log_level="warning",
            ),
        )
        self.start_task: asyncio.Task[None] | None = None

    def callback_url(self, serial: str, hub_addr: str) -> str:
        host = self.settings.postback_host or local_addr_for(hub_addr)
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.settings.postback_port}/postback/{serial}"

    async def start(self) -> None:
        lp = f"{self.lp}start:"
        logger.info(
            "%s Starting postback listener on %s:%s",
            lp,
            self.settings.postback_bind,
            self.settings.postback_port,
        )
        try:
            await self.uvi_server.serve()
        except asyncio.CancelledError:
            logger.info("%s Postback listener stopped", lp)
            raise

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        logger.info("%s Stopping postback listener...", lp)
        self.uvi_server.should_exit = True
        if self.start_task is not None and not self.start_task.done():
            try:
                await asyncio.wait_for(self.start_task, timeout=5)
            except TimeoutError:
                _ = self.start_task.cancel()
