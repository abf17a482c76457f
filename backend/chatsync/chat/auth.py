"""
Session collaborator interface.

WHAT: Access token and current-user identity consumed by the engine
WHY: Authentication itself lives outside this engine
HOW: Protocol plus a settings-backed implementation
"""

from typing import Protocol

from ..core.config import settings


class AuthSession(Protocol):
    """What the engine needs from the session layer."""

    @property
    def access_token(self) -> str | None:
        ...

    @property
    def user_id(self) -> str | None:
        ...


class StaticAuthSession:
    """Fixed token/user pair, typically read from configuration."""

    def __init__(self, access_token: str | None = None, user_id: str | int | None = None):
        self._access_token = access_token or None
        self._user_id = str(user_id) if user_id not in (None, "") else None

    @classmethod
    def from_settings(cls) -> "StaticAuthSession":
        return cls(access_token=settings.CHAT_ACCESS_TOKEN, user_id=settings.CHAT_USER_ID)

    @property
    def access_token(self) -> str | None:
        return self._access_token

    @property
    def user_id(self) -> str | None:
        return self._user_id


def is_authenticated(session: AuthSession | None) -> bool:
    return bool(session and session.access_token)
