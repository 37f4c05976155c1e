"""HTTP + SSE server the UI host talks to.

The UI host cannot open Unix sockets itself. It issues requests and
opens streams through this server, and receives every named event
(stream chunks, terminal signals, health changes, relayed daemon
events) on the ``/events`` SSE endpoint.

Usage:
    daemonbridge [--port PORT] [--config PATH]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid

from aiohttp import web

from daemonbridge.adapters.event_bus import EventBus
from daemonbridge.adapters.events import encode_sse
from daemonbridge.engine.config import BridgeConfig
from daemonbridge.engine.errors import (
    ConnectError,
    ParseError,
    StreamAlreadyActiveError,
)
from daemonbridge.engine.http_client import UnixHttpClient
from daemonbridge.engine.liveness import LivenessRegistry
from daemonbridge.engine.models import SocketTarget
from daemonbridge.engine.multiplexer import StreamMultiplexer
from daemonbridge.engine.relay import DaemonEventRelay
from daemonbridge.engine.resolver import SocketResolver
from daemonbridge.engine.traffic import get_traffic_counters

logger = logging.getLogger(__name__)

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


def _error_response(status: int, message: str, kind: str) -> web.Response:
    return web.json_response(
        {"ok": False, "error": message, "kind": kind},
        status=status,
        headers=CORS_HEADERS,
    )


class BridgeServer:
    """Thin HTTP adapter over the bridge engine.

    All socket work lives in the engine; this class only handles
    routing, the event fan-out, and background task lifecycle.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        background: bool = True,
        observe: bool = True,
    ) -> None:
        self._config = config or BridgeConfig.from_env()
        self._background = background
        self._started_at = time.time()

        self._bus = EventBus(maxsize=self._config.event_queue_size)
        self._resolver = SocketResolver(self._config)
        self._client = UnixHttpClient(self._resolver, self._config)
        self._streams = StreamMultiplexer(self._bus.publish, self._resolver, self._config)
        self._liveness = LivenessRegistry(
            self._client, self._bus.publish, self._config, observe=observe,
        )
        self._relay: DaemonEventRelay | None = None
        if self._config.relay_enabled:
            self._relay = DaemonEventRelay(self._bus.publish, self._resolver, self._config)

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "BridgeServer init host=%s port=%s base_dir=%s relay=%s pid=%s",
            self._config.host, self._config.port, self._config.base_dir,
            self._config.relay_enabled, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def streams(self) -> StreamMultiplexer:
        return self._streams

    @property
    def liveness(self) -> LivenessRegistry:
        return self._liveness

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-bridge-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s", request.method, request.path_qs, req_id)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/traffic", self._handle_traffic)
        r.add_route("*", "/proxy/{target}/{tail:.*}", self._handle_proxy)
        r.add_get("/streams", self._handle_list_streams)
        r.add_post("/streams", self._handle_open_stream)
        r.add_get("/liveness/{target}", self._handle_get_liveness)
        r.add_post("/liveness/{target}", self._handle_watch_liveness)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        if not self._background:
            return
        self._liveness.watch(SocketTarget.primary())
        for name in self._config.watch_plugins:
            self._liveness.watch(SocketTarget.plugin(name))
        if self._relay is not None:
            self._relay.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._streams.shutdown()
        if self._relay is not None:
            await self._relay.stop()
        await self._liveness.stop_all()
        self._bus.close()

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Bridge server started but no listening socket was reported.")

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Bridge server listening on %s:%d", self._config.host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "active_streams": len(self._streams.active_streams()),
            "event_subscribers": self._bus.subscriber_count,
            "watching": [str(t) for t in self._liveness.targets()],
            "relay_running": bool(self._relay and self._relay.running),
        })

    async def _handle_traffic(self, request: web.Request) -> web.Response:
        return web.json_response(get_traffic_counters().to_dict(), headers=CORS_HEADERS)

    async def _handle_proxy(self, request: web.Request) -> web.Response:
        try:
            target = SocketTarget.parse(request.match_info["target"])
        except ValueError as exc:
            return _error_response(400, str(exc), "target")

        headers = {}
        accept = request.headers.get("Accept")
        if accept:
            headers["Accept"] = accept
        body = await request.read()
        # match_info is percent-decoded; the daemon gets the encoded form.
        tail = request.rel_url.raw_path.split("/", 3)[3]
        try:
            response = await self._client.request(
                target,
                request.method,
                "/" + tail,
                query=request.rel_url.raw_query_string,
                body=body,
                headers=headers,
            )
        except ConnectError as exc:
            logger.warning("Proxy %s %s: %s", target, request.path, exc)
            return _error_response(503, str(exc), "connect")
        except ParseError as exc:
            logger.warning("Proxy %s %s: %s", target, request.path, exc)
            return _error_response(503, str(exc), "parse")

        return web.Response(
            status=response.status,
            body=response.body,
            headers={"Content-Type": response.content_type, **CORS_HEADERS},
        )

    async def _handle_list_streams(self, request: web.Request) -> web.Response:
        return web.json_response({"streams": self._streams.active_streams()})

    async def _handle_open_stream(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error_response(400, "Request body must be JSON", "request")
        if not isinstance(data, dict):
            return _error_response(400, "Request body must be a JSON object", "request")

        stream_id = str(data.get("stream_id") or "")
        path = str(data.get("path") or "")
        if not stream_id or not path.startswith("/"):
            return _error_response(
                400, "stream_id and an absolute path are required", "request",
            )
        body = data.get("body")
        if body is None:
            body_bytes = b""
        elif isinstance(body, str):
            body_bytes = body.encode("utf-8")
        else:
            body_bytes = json.dumps(body).encode("utf-8")

        try:
            target = SocketTarget.parse(str(data.get("target") or "primary"))
            channels = self._streams.open_stream(
                target,
                path,
                stream_id,
                prefix=str(data.get("prefix") or "stream"),
                method=str(data.get("method") or ("POST" if body_bytes else "GET")),
                body=body_bytes,
                parser=str(data.get("parser") or "json"),
            )
        except StreamAlreadyActiveError as exc:
            return _error_response(409, str(exc), "stream")
        except ValueError as exc:
            return _error_response(400, str(exc), "request")

        return web.json_response(
            {"stream_id": stream_id, "channels": channels.as_dict()},
            status=202,
            headers=CORS_HEADERS,
        )

    async def _handle_get_liveness(self, request: web.Request) -> web.Response:
        try:
            target = SocketTarget.parse(request.match_info["target"])
        except ValueError as exc:
            return _error_response(400, str(exc), "target")
        snapshot = self._liveness.cached(target)
        return web.json_response(
            {
                "target": str(target),
                "watched": snapshot is not None,
                "health": snapshot.health if snapshot else None,
                "snapshot": snapshot.to_dict() if snapshot else None,
            },
            headers=CORS_HEADERS,
        )

    async def _handle_watch_liveness(self, request: web.Request) -> web.Response:
        try:
            target = SocketTarget.parse(request.match_info["target"])
        except ValueError as exc:
            return _error_response(400, str(exc), "target")
        self._liveness.watch(target)
        return web.json_response({"target": str(target), "watched": True}, status=202)

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                **CORS_HEADERS,
            },
        )
        await response.prepare(request)

        queue = self._bus.subscribe()
        logger.info(
            "SSE client connected req=%s active_clients=%d",
            request.get("req_id", "unknown"), self._bus.subscriber_count,
        )
        keepalive = self._config.sse_keepalive_seconds
        try:
            await response.write(
                f"event: connected\ndata: {json.dumps({'streams': self._streams.active_streams()})}\n\n".encode()
            )
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive)
                    await response.write(encode_sse(event))
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._bus.unsubscribe(queue)
            logger.info(
                "SSE client disconnected req=%s active_clients=%d",
                request.get("req_id", "unknown"), self._bus.subscriber_count,
            )
        return response
