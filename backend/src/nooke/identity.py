"""Caller identity used by the room and voice layers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class Identity:
    """Authenticated user on whose behalf the client acts."""

    user_id: str
    display_name: str | None = None
    access_token: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.user_id
