from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Credentials for out-of-band delivery.

    Values come from the process environment or a local `.env.secrets` file and are
    only reported as SET/UNSET by `get_safe_config_report()`. Any value of eight or
    more characters is also masked verbatim in log output.
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ntfy: "Bearer <token>", "token:<token>", "userpass:<user>:<pass>" or "<user>:<pass>"
    ntfy_auth: SecretStr | None = Field(default=None, alias="NTFY_AUTH")
