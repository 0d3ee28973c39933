from __future__ import annotations

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import json
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from imgsmush.api.protocol import StepProtocol
from imgsmush.service import SmushService


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = "imgsmush-step"

    def do_GET(self) -> None:  # noqa: N802
        parts = urlsplit(self.path)
        action = parts.path.strip("/")
        args = dict(parse_qsl(parts.query))
        protocol: StepProtocol = self.server.protocol  # type: ignore[attr-defined]
        response = protocol.handle(action, args)
        self._write_json(response.status, response.body)

    def log_message(self, fmt: str, *args: Any) -> None:
        # Keep CLI output clean.
        return

    def _write_json(self, status: int, payload: dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


def run_http_server(service: SmushService, host: str = "127.0.0.1", port: int = 8282) -> int:
    protocol = StepProtocol(service)

    class _Srv(ThreadingHTTPServer):
        pass

    _Srv.protocol = protocol  # type: ignore[attr-defined]

    server = _Srv((host, port), _Handler)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0
