from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- server ---
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # --- logging ---
    log_dir: Path = Field(default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="LOG_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- in-app toasts ---
    notify_throttle_ms: int = Field(default=2000, alias="NOTIFY_THROTTLE_MS")
    notify_toast_duration_ms: int = Field(default=4000, alias="NOTIFY_TOAST_DURATION_MS")
    notify_toast_position: str = Field(default="bottom-right", alias="NOTIFY_TOAST_POSITION")
    # Comma separated event kinds that may raise a desktop notification.
    notify_escalate_kinds: str = Field(default="queue,alert", alias="NOTIFY_ESCALATE_KINDS")

    # --- desktop (OS-level) notifications ---
    desktop_notifications_enabled: bool = Field(
        default=True, alias="DESKTOP_NOTIFICATIONS_ENABLED"
    )
    desktop_auto_close_ms: int = Field(default=5000, alias="DESKTOP_AUTO_CLOSE_MS")
    desktop_icon: str = Field(default="/favicon.ico", alias="DESKTOP_ICON")

    # --- waiting room rules ---
    long_wait_minutes: int = Field(default=30, alias="LONG_WAIT_MINUTES")
    urgent_task_priority_max: int = Field(default=2, alias="URGENT_TASK_PRIORITY_MAX")
    # Used to decide whether a new appointment falls on "today".
    clinic_timezone: str = Field(default="UTC", alias="CLINIC_TIMEZONE")

    # --- queue reorder ---
    reorder_confirm_duration_ms: int = Field(default=2000, alias="REORDER_CONFIRM_DURATION_MS")

    # --- notification outbox ---
    outbox_retries: int = Field(default=3, alias="OUTBOX_RETRIES")
    outbox_backoff_base_s: float = Field(default=0.5, alias="OUTBOX_BACKOFF_BASE_S")
    outbox_backoff_cap_s: float = Field(default=8.0, alias="OUTBOX_BACKOFF_CAP_S")
    outbox_max_pending: int = Field(default=1000, alias="OUTBOX_MAX_PENDING")

    # --- out-of-band push (optional; private/self-hosted) ---
    # When enabled, outbox intents are POSTed to a self-hosted ntfy instance.
    ntfy_enabled: bool = Field(default=False, alias="NTFY_ENABLED")
    ntfy_base_url: str = Field(default="", alias="NTFY_BASE_URL")  # e.g. http://127.0.0.1:8081
    ntfy_topic: str = Field(default="", alias="NTFY_TOPIC")
    ntfy_tls_insecure: bool = Field(default=False, alias="NTFY_TLS_INSECURE")
    ntfy_timeout_sec: float = Field(default=5.0, alias="NTFY_TIMEOUT_SEC")

    # --- web ---
    sse_ping_sec: int = Field(default=15, alias="SSE_PING_SEC")

    def escalate_kind_list(self) -> list[str]:
        raw = str(self.notify_escalate_kinds or "")
        out: list[str] = []
        for part in raw.replace(";", ",").split(","):
            p = part.strip().lower()
            if p and p not in out:
                out.append(p)
        return out
