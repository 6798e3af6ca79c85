#!/usr/bin/env python3
"""SOA Monitor trigger server - stdlib HTTP entry point for ticks.

A scheduler (cron, a hosted timer) POSTs /trigger with the shared bearer
token to run one tick; the JSON summary comes back in the response. The
server also exposes the zone list and check history read-only, and a test
endpoint that sends the "channel configured" message to a webhook URL.

Usage:
    CRON_SECRET_TOKEN=s3cret python3 trigger_server.py              # http://0.0.0.0:5000
    CRON_SECRET_TOKEN=s3cret python3 trigger_server.py --port 8080

    curl -X POST -H "Authorization: Bearer s3cret" http://localhost:5000/trigger
"""

from __future__ import annotations

import argparse
import asyncio
import hmac
import json
import os
from functools import partial
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import urlparse

import httpx

import soa_monitor as mon
from failure_policy import ConfigError
from notifier import TEST_CHANNELS, send_test_notification
from zone_store import ZoneStore

log = mon.log

# ---------------------------------------------------------------------------
# API handlers - each returns (status, JSON-serializable body)
# ---------------------------------------------------------------------------

def authorized(config: mon.MonitorConfig, auth_header: str | None) -> bool:
    """Bearer token must match CRON_SECRET_TOKEN; an unset secret admits nobody."""
    if not config.cron_secret or not auth_header:
        return False
    return hmac.compare_digest(auth_header, f"Bearer {config.cron_secret}")


def api_trigger(config: mon.MonitorConfig,
                auth_header: str | None) -> tuple[int, Any]:
    if not authorized(config, auth_header):
        return 401, {"message": "Unauthorized"}
    try:
        summary = asyncio.run(mon.run_tick(config))
    except ConfigError as e:
        log.error(f"DNS monitoring failed: {e}")
        return 500, {"message": "DNS monitoring failed", "error": str(e)}
    return 200, summary


def api_zones(config: mon.MonitorConfig) -> tuple[int, Any]:
    store = ZoneStore(config.db_file)
    store.init()
    return 200, [z.to_dict() for z in store.list_zones()]


def api_checks(config: mon.MonitorConfig, zone_id: int) -> tuple[int, Any]:
    store = ZoneStore(config.db_file)
    store.init()
    if store.get_zone(zone_id) is None:
        return 404, {"message": f"Unknown zone {zone_id}"}
    return 200, [c.to_dict() for c in store.checks(zone_id)]


def api_test_notification(body: bytes) -> tuple[int, Any]:
    try:
        data = json.loads(body or b"{}")
    except ValueError:
        return 400, {"success": False, "message": "Invalid input"}
    if not isinstance(data, dict):
        return 400, {"success": False, "message": "Invalid input"}
    channel, url = data.get("channel"), data.get("url")
    parsed = urlparse(url) if isinstance(url, str) else None
    if (channel not in TEST_CHANNELS or parsed is None
            or parsed.scheme not in ("http", "https") or not parsed.netloc):
        return 400, {"success": False, "message": "Invalid input"}

    async def send():
        async with httpx.AsyncClient(timeout=10.0) as client:
            return await send_test_notification(client, channel, url)

    result = asyncio.run(send())
    if not result.ok:
        detail = f" ({result.status})" if result.status else ""
        return 400, {"success": False,
                     "message": f"Failed to send test notification{detail}",
                     "details": result.error[:300]}
    return 200, {"success": True}

# ---------------------------------------------------------------------------
# HTTP plumbing
# ---------------------------------------------------------------------------

class TriggerHandler(BaseHTTPRequestHandler):
    def __init__(self, config: mon.MonitorConfig, *args, **kwargs) -> None:
        self.config = config
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        log.info(f"HTTP {self.address_string()} {format % args}")

    def _send_json(self, status: int, data: Any) -> None:
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length > 0 else b""

    def do_POST(self):
        path = urlparse(self.path).path.rstrip("/")
        body = self._read_body()
        try:
            if path == "/trigger":
                self._send_json(*api_trigger(self.config,
                                             self.headers.get("Authorization")))
            elif path == "/api/notifications/test":
                self._send_json(*api_test_notification(body))
            else:
                self._send_json(404, {"message": "Not found"})
        except Exception as e:
            log.error(f"{path}: {e}")
            self._send_json(500, {"message": "Internal server error"})

    def do_GET(self):
        path = urlparse(self.path).path.rstrip("/")
        try:
            if path == "/api/zones":
                self._send_json(*api_zones(self.config))
                return
            if path.startswith("/api/checks/"):
                try:
                    zone_id = int(path[len("/api/checks/"):])
                except ValueError:
                    self._send_json(400, {"message": "Zone id must be an integer"})
                    return
                self._send_json(*api_checks(self.config, zone_id))
                return
            self._send_json(404, {"message": "Not found"})
        except Exception as e:
            log.error(f"{path}: {e}")
            self._send_json(500, {"error": str(e)})


def make_server(config: mon.MonitorConfig, host: str = "0.0.0.0",
                port: int = 5000) -> HTTPServer:
    return HTTPServer((host, port), partial(TriggerHandler, config))


def main():
    parser = argparse.ArgumentParser(description="SOA Monitor trigger server")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 5000)))
    parser.add_argument("--host", default="0.0.0.0")
    args = parser.parse_args()

    mon.setup_logging()
    try:
        config = mon.load_config()
    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        raise SystemExit(2)
    if not config.cron_secret:
        log.warning("CRON_SECRET_TOKEN is not set; /trigger will reject every request")

    server = make_server(config, args.host, args.port)
    log.info(f"Trigger server: http://{args.host}:{args.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log.info("Shutdown.")
        server.server_close()


if __name__ == "__main__":
    main()
