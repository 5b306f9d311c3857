from __future__ import annotations

from enum import Enum
from typing import Protocol

from clinic_realtime.utils.log import logger


class PermissionState(str, Enum):
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"

    @classmethod
    def parse(cls, raw: object) -> PermissionState:
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.DEFAULT


class PermissionProvider(Protocol):
    def current(self) -> PermissionState: ...

    async def request(self) -> PermissionState: ...


class PermissionCache:
    """
    Session-scoped desktop notification permission.

    The first `activate()` reads the platform state and, if the user was never
    asked, issues a single request. The result is reused for every escalation
    decision afterwards; nothing re-prompts. A prompt cancelled before the user
    answered does not count as activation.
    """

    def __init__(self, state: PermissionState = PermissionState.DEFAULT) -> None:
        self.state = state
        self.activated = False
        self.prompting = False
        self.requests = 0

    @property
    def granted(self) -> bool:
        return self.state is PermissionState.GRANTED

    async def activate(self, provider: PermissionProvider | None) -> PermissionState:
        if self.activated or self.prompting or provider is None:
            return self.state
        try:
            self.state = provider.current()
        except Exception as ex:
            logger.warning("permission_query_failed", error=str(ex))
            self.activated = True
            return self.state
        if self.state is PermissionState.DEFAULT:
            await self._request(provider)
        self.activated = True
        return self.state

    async def request_permission(self, provider: PermissionProvider | None) -> PermissionState:
        """Explicit request; only prompts while the state is still `default`."""
        if provider is None or self.prompting or self.state is not PermissionState.DEFAULT:
            return self.state
        await self._request(provider)
        return self.state

    async def _request(self, provider: PermissionProvider) -> None:
        self.requests += 1
        self.prompting = True
        try:
            self.state = PermissionState.parse(await provider.request())
        except Exception as ex:
            logger.warning("permission_request_failed", error=str(ex))
            return
        finally:
            self.prompting = False
        logger.info("permission_resolved", state=self.state.value)
