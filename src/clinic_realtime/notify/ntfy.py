from __future__ import annotations

import asyncio
import base64
import urllib.error
import urllib.request

from clinic_realtime.config import get_settings
from clinic_realtime.utils.log import logger

from .base import NotificationIntent


class DeliveryError(RuntimeError):
    def __init__(self, status: int | None, detail: str = "") -> None:
        super().__init__(f"ntfy delivery failed (status={status}) {detail}".strip())
        self.status = status


def parse_auth(raw: str) -> dict[str, str]:
    """
    Supported formats:
      - "Bearer <token>"
      - "token:<token>"
      - "userpass:<user>:<pass>"
      - "<user>:<pass>"
    Returns headers to apply. Never returns secrets for logging.
    """
    v = (raw or "").strip()
    if not v:
        return {}
    if v.lower().startswith("bearer "):
        return {"Authorization": v}
    if v.lower().startswith("token:"):
        tok = v.split(":", 1)[1].strip()
        return {"Authorization": f"Bearer {tok}"}
    if v.lower().startswith("userpass:"):
        rest = v.split(":", 1)[1]
        parts = rest.split(":", 1)
        if len(parts) != 2:
            return {}
        user, pw = parts[0], parts[1]
        b64 = base64.b64encode(f"{user}:{pw}".encode()).decode("ascii")
        return {"Authorization": f"Basic {b64}"}
    if ":" in v and not v.startswith("http"):
        user, pw = v.split(":", 1)
        b64 = base64.b64encode(f"{user}:{pw}".encode()).decode("ascii")
        return {"Authorization": f"Basic {b64}"}
    # Unknown format; treat as bearer token.
    return {"Authorization": f"Bearer {v}"}


def build_request(
    *, base_url: str, topic: str, intent: NotificationIntent, auth_headers: dict[str, str]
) -> urllib.request.Request:
    url = f"{base_url.rstrip('/')}/{topic.strip()}"
    req = urllib.request.Request(url, data=(intent.message or "").encode("utf-8"), method="POST")

    # ntfy headers: https://docs.ntfy.sh/publish/
    req.add_header("Content-Type", "text/plain; charset=utf-8")
    req.add_header("Title", intent.title or "Notification")
    if intent.tags:
        req.add_header("Tags", ",".join([str(t).strip() for t in intent.tags if str(t).strip()]))
    if intent.priority is not None:
        p = max(1, min(5, int(intent.priority)))
        req.add_header("Priority", str(p))
    for k, v in (auth_headers or {}).items():
        if k and v:
            req.add_header(k, v)
    return req


class NtfySender:
    """
    Delivers outbox intents to a self-hosted ntfy topic.

    Raises `DeliveryError` on non-2xx so the outbox retry policy applies.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        topic: str | None = None,
        timeout_sec: float | None = None,
        tls_insecure: bool | None = None,
        auth: str | None = None,
    ) -> None:
        s = get_settings()
        self.base_url = str(base_url if base_url is not None else s.ntfy_base_url).strip()
        self.topic = str(topic if topic is not None else s.ntfy_topic).strip()
        self.timeout_sec = float(timeout_sec if timeout_sec is not None else s.ntfy_timeout_sec)
        self.tls_insecure = bool(tls_insecure if tls_insecure is not None else s.ntfy_tls_insecure)
        if auth is None and s.ntfy_auth is not None:
            auth = s.ntfy_auth.get_secret_value()
        self._auth_headers = parse_auth(auth or "")

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.topic)

    def _post(self, intent: NotificationIntent) -> int:
        req = build_request(
            base_url=self.base_url,
            topic=self.topic,
            intent=intent,
            auth_headers=self._auth_headers,
        )
        ctx = None
        if self.tls_insecure:
            import ssl

            ctx = ssl._create_unverified_context()
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec, context=ctx) as resp:
                return int(getattr(resp, "status", 200) or 200)
        except urllib.error.HTTPError as ex:
            return int(ex.code)

    async def deliver(self, intent: NotificationIntent) -> None:
        if not self.configured:
            raise DeliveryError(None, "ntfy base url/topic not configured")
        status = await asyncio.to_thread(self._post, intent)
        # Never log auth or topic.
        logger.info("ntfy_notify", intent_event=intent.event, status=status)
        if not 200 <= status < 300:
            raise DeliveryError(status)
