from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig

_KNOWN_KINDS = {"queue", "alert", "appointment", "task", "activity"}


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def escalate_kind_list(self) -> list[str]:
        return self.public.escalate_kind_list()


def _strict() -> bool:
    return bool(int(os.environ.get("STRICT_SECRETS", "0") or "0"))


def _validate(s: Settings) -> None:
    """
    Hard-fail only when explicitly requested (STRICT_SECRETS=1); warn otherwise.
    """
    import logging

    problems: list[str] = []
    p = s.public
    if int(p.notify_throttle_ms) < 0:
        problems.append("NOTIFY_THROTTLE_MS")
    if int(p.desktop_auto_close_ms) <= 0:
        problems.append("DESKTOP_AUTO_CLOSE_MS")
    unknown = [k for k in p.escalate_kind_list() if k not in _KNOWN_KINDS]
    if unknown:
        problems.append("NOTIFY_ESCALATE_KINDS")
    try:
        from zoneinfo import ZoneInfo

        ZoneInfo(str(p.clinic_timezone))
    except Exception:
        problems.append("CLINIC_TIMEZONE")
    if bool(p.ntfy_enabled) and (not str(p.ntfy_base_url).strip() or not str(p.ntfy_topic).strip()):
        problems.append("NTFY_BASE_URL/NTFY_TOPIC")

    if problems:
        if _strict():
            raise ConfigError(
                "Invalid configuration detected: "
                + ", ".join(sorted(set(problems)))
                + ". Set them via environment variables or `.env`."
            )
        logging.getLogger("clinic_realtime").warning(
            "config_problems_detected",
            extra={"problems": sorted(set(problems)), "strict_secrets": False},
        )


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {
        "strict_secrets": _strict(),
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s
