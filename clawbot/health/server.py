"""HTTP health, status and dashboard server."""

from __future__ import annotations

import html
import json
import threading
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from clawbot.memory.conversation_store import ConversationStore
from clawbot.quota import QuotaStatus, QuotaTracker

DASHBOARD_REFRESH_SECONDS = 30


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_status_payload(
    *,
    conversations: ConversationStore,
    quota: QuotaTracker,
    started_at: float,
    quota_status: QuotaStatus | None = None,
) -> dict[str, Any]:
    if quota_status is None:
        quota_status = quota.status()
    return {
        "status": "online",
        "uptime_seconds": int(time.time() - started_at),
        "quota": {
            "used": quota_status.used,
            "limit": quota_status.limit,
            "remaining": quota_status.remaining,
            "percentage": quota_status.percentage,
        },
        "stats": {
            "totalUsers": conversations.user_count(),
            "activeToday": quota.active_users_today(),
            "conversations": conversations.conversation_count(),
        },
        "timestamp": _utc_now_iso(),
    }


def render_dashboard(payload: dict[str, Any], *, title: str, tier: str) -> str:
    quota = payload["quota"]
    stats = payload["stats"]
    rows = [
        ("Status", payload["status"]),
        ("Uptime", f"{payload['uptime_seconds']}s"),
        ("Requests today", f"{quota['used']} / {quota['limit']} ({quota['percentage']}%)"),
        ("Remaining", f"{quota['remaining']} ({tier})"),
        ("Total users", stats["totalUsers"]),
        ("Active today", stats["activeToday"]),
        ("Conversations", stats["conversations"]),
        ("Updated", payload["timestamp"]),
    ]
    body_rows = "\n".join(
        f"<tr><th>{html.escape(str(label))}</th><td>{html.escape(str(value))}</td></tr>"
        for label, value in rows
    )
    bar_width = max(0, min(100, int(quota["percentage"])))
    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta http-equiv="refresh" content="{DASHBOARD_REFRESH_SECONDS}">
<title>{html.escape(title)}</title>
<style>
body {{ font-family: sans-serif; margin: 2em; }}
table {{ border-collapse: collapse; }}
th, td {{ text-align: left; padding: 4px 12px; border-bottom: 1px solid #ddd; }}
.bar {{ width: 300px; height: 12px; background: #eee; margin: 1em 0; }}
.fill {{ height: 100%; background: #4a90d9; }}
</style>
</head>
<body>
<h1>{html.escape(title)}</h1>
<div class="bar"><div class="fill" style="width: {bar_width}%"></div></div>
<table>
{body_rows}
</table>
</body>
</html>
"""


class HealthServer:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        display_name: str,
        conversations: ConversationStore,
        quota: QuotaTracker,
    ) -> None:
        self._host = host
        self._port = port
        self._display_name = display_name
        self._conversations = conversations
        self._quota = quota
        self._started_at = time.time()
        self._thread: threading.Thread | None = None
        self._httpd: ThreadingHTTPServer | None = None

    @property
    def port(self) -> int:
        if self._httpd is not None:
            return int(self._httpd.server_address[1])
        return self._port

    def start(self) -> None:
        handler_cls = self._build_handler()
        self._httpd = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2)
        self._httpd = None
        self._thread = None

    def _build_handler(self) -> type[BaseHTTPRequestHandler]:
        display_name = self._display_name
        conversations = self._conversations
        quota = self._quota
        started_at = self._started_at

        def status_payload(quota_status: QuotaStatus | None = None) -> dict[str, Any]:
            return build_status_payload(
                conversations=conversations,
                quota=quota,
                started_at=started_at,
                quota_status=quota_status,
            )

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                path = self.path.split("?")[0]
                if path in {"/", "/status"}:
                    self._write_json(200, status_payload())
                    return

                if path == "/health":
                    self._write_json(200, {"status": "healthy", "time": _utc_now_iso()})
                    return

                if path == "/dashboard":
                    # One read so the tier always matches the figures shown.
                    quota_status = quota.status()
                    page = render_dashboard(
                        status_payload(quota_status),
                        title=display_name,
                        tier=quota_status.tier.value,
                    )
                    self._write_body(200, page.encode("utf-8"), "text/html; charset=utf-8")
                    return

                self._write_json(404, {"error": "Not found"})

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
                # Per-request access lines are too noisy for the runtime log.
                _ = (format, args)
                return

            def _write_json(self, status_code: int, payload: dict[str, Any]) -> None:
                encoded = json.dumps(payload, ensure_ascii=True).encode("utf-8")
                self._write_body(status_code, encoded, "application/json")

            def _write_body(self, status_code: int, encoded: bytes, content_type: str) -> None:
                self.send_response(status_code)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(encoded)))
                self.end_headers()
                self.wfile.write(encoded)

        return Handler
