"""
core/gateway.py
Lightweight HTTP gateway — exposes the WeCom webhook endpoints.

Endpoints:
  GET  /health                      Health check (mounted paths, in-flight turns)
  GET  /wecom, /wecom/bot[/<id>]    Bot dialect handshake
  POST /wecom, /wecom/bot[/<id>]    Bot dialect callbacks
  GET  /wecom/agent[/<id>]          Agent dialect handshake
  POST /wecom/agent[/<id>]          Agent dialect callbacks

The HTTP server runs on the stdlib ``HTTPServer``; the WeCom engine lives on
its own asyncio loop in a dedicated thread. Each request is handed to that
loop with ``run_coroutine_threadsafe`` so engine state is only ever touched
from the loop thread.

Default port: 19789  (configurable via WECOM_GATEWAY_PORT or config)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import urllib.parse
from concurrent.futures import TimeoutError as FutureTimeout
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Event, Thread
from typing import Any, Optional

from adapters.channels.wecom.engine import WecomEngine
from adapters.channels.wecom.router import MAX_BODY_BYTES, WebhookRequest
from core.config import (debounce_interval, network_timeout, resolve_accounts,
                         MODE_MATRIX, ResolvedAccounts)
from core.runtime import AgentRuntime, create_runtime

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 19789
REQUEST_TIMEOUT = 10.0   # seconds a request may wait on the engine loop


# ══════════════════════════════════════════════════════════════════════════════
#  Engine loop thread
# ══════════════════════════════════════════════════════════════════════════════

def start_engine_loop(engine: WecomEngine) -> asyncio.AbstractEventLoop:
    """Run a fresh event loop for ``engine`` in a daemon thread."""
    loop = asyncio.new_event_loop()
    ready = Event()

    def _run_loop():
        asyncio.set_event_loop(loop)
        loop.call_soon(ready.set)
        try:
            loop.run_forever()
        except Exception as e:
            logger.error("WeCom engine event loop error: %s", e)
        finally:
            loop.close()

    thread = Thread(target=_run_loop, daemon=True, name="wecom-engine")
    thread.start()
    ready.wait(timeout=5)
    logger.info("WeCom engine loop started")
    return loop


def build_engine(cfg: dict, runtime: Optional[AgentRuntime] = None,
                 ) -> tuple[WecomEngine, ResolvedAccounts]:
    """Create an engine from config and mount every enabled account."""
    resolved = resolve_accounts(cfg)
    engine = WecomEngine(
        runtime or create_runtime(cfg),
        debounce=debounce_interval(cfg),
        http_timeout=network_timeout(cfg),
    )
    count = engine.start_all(resolved.enabled(),
                             multi_account=resolved.mode == MODE_MATRIX)
    logger.info("WeCom mode=%s, %d account(s) started, paths: %s",
                resolved.mode, count, ", ".join(engine.paths()) or "(none)")
    return engine, resolved


# ══════════════════════════════════════════════════════════════════════════════
#  HTTP handler
# ══════════════════════════════════════════════════════════════════════════════

class GatewayServer(HTTPServer):
    """HTTPServer carrying the engine and the loop it runs on."""

    def __init__(self, address: tuple[str, int], engine: WecomEngine,
                 loop: asyncio.AbstractEventLoop):
        super().__init__(address, _Handler)
        self.engine = engine
        self.loop = loop
        self.started_at = time.time()


class _Handler(BaseHTTPRequestHandler):
    """Forwards WeCom callbacks to the engine loop."""

    server: GatewayServer

    def log_message(self, fmt, *args):
        logger.debug(fmt, *args)

    # ── Response helpers ──
    def _respond(self, code: int, body: bytes,
                 content_type: str = "text/plain; charset=utf-8"):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _json_response(self, code: int, data: Any):
        body = json.dumps(data, ensure_ascii=False, default=str).encode()
        self._respond(code, body, "application/json")

    def _read_body(self) -> Optional[bytes]:
        """Request body, or None (after a 400) when it exceeds the cap."""
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            length = 0
        if length > MAX_BODY_BYTES:
            self.close_connection = True
            self._respond(400, b"request body too large")
            return None
        return self.rfile.read(length) if length > 0 else b""

    # ── Routes ──
    def do_GET(self):
        if urllib.parse.urlparse(self.path).path.rstrip("/") == "/health":
            engine = self.server.engine
            self._json_response(200, {
                "status": "ok",
                "uptime_seconds": int(time.time() - self.server.started_at),
                "paths": engine.paths(),
                "streams": len(engine.store.streams),
                "in_flight": len(engine.tasks),
            })
            return
        self._dispatch("GET", b"")

    def do_POST(self):
        body = self._read_body()
        if body is None:
            return
        self._dispatch("POST", body)

    def _dispatch(self, method: str, body: bytes):
        parsed = urllib.parse.urlparse(self.path)
        query = {k: v[0] for k, v in
                 urllib.parse.parse_qs(parsed.query, keep_blank_values=True).items()}
        request = WebhookRequest(method=method, path=parsed.path, query=query, body=body)

        future = asyncio.run_coroutine_threadsafe(
            self.server.engine.handle(request), self.server.loop)
        try:
            response = future.result(timeout=REQUEST_TIMEOUT)
        except FutureTimeout:
            future.cancel()
            logger.error("WeCom request timed out: %s %s", method, parsed.path)
            self._respond(504, b"timeout")
            return
        except Exception as e:
            logger.exception("WeCom request failed: %s %s: %s", method, parsed.path, e)
            self._respond(500, b"internal error")
            return

        if response is None:
            self._respond(404, b"not found")
            return
        self._respond(response.status, response.body_bytes, response.content_type)


# ══════════════════════════════════════════════════════════════════════════════
#  Lifecycle
# ══════════════════════════════════════════════════════════════════════════════

def start_gateway(cfg: dict, host: str = "", port: int = 0,
                  daemon: bool = True,
                  runtime: Optional[AgentRuntime] = None) -> Optional[GatewayServer]:
    """
    Start the WeCom gateway.
    Returns the server instance (or None if the port cannot be bound).
    """
    gateway_cfg = cfg.get("gateway") or {}
    host = host or gateway_cfg.get("host") or DEFAULT_HOST
    port = port or int(os.environ.get("WECOM_GATEWAY_PORT",
                                      gateway_cfg.get("port") or DEFAULT_PORT))

    engine, resolved = build_engine(cfg, runtime)
    if not engine.paths():
        logger.warning("No WeCom account is configured (mode=%s); "
                       "only /health will answer", resolved.mode)

    loop = start_engine_loop(engine)
    try:
        server = GatewayServer((host, port), engine, loop)
    except OSError as e:
        logger.error("Cannot start gateway on %s:%d: %s", host, port, e)
        loop.call_soon_threadsafe(loop.stop)
        return None

    if daemon:
        thread = Thread(target=server.serve_forever, daemon=True, name="wecom-gateway")
        thread.start()
        logger.info("Gateway started on http://%s:%d", host, port)
    else:
        logger.info("Gateway running on http://%s:%d (foreground)", host, port)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
        finally:
            stop_gateway(server)

    return server


def stop_gateway(server: GatewayServer) -> None:
    """Stop accepting requests, clear engine timers, stop the loop."""
    server.server_close()
    loop = server.loop
    if loop.is_running():
        asyncio.run_coroutine_threadsafe(_stop_engine(server.engine), loop).result(timeout=5)
        loop.call_soon_threadsafe(loop.stop)
    logger.info("Gateway stopped")


async def _stop_engine(engine: WecomEngine) -> None:
    engine.stop()
    await engine.runtime.close()
