from __future__ import annotations

from typing import Mapping


class ConfigError(ValueError):
    """Raised when a stage, threshold or request definition is malformed."""


class RequestError(Exception):
    """Raised by a request function when the request itself could not complete.

    The virtual user records it as a failed sample and keeps iterating.
    """

    def __init__(
        self,
        message: str,
        duration_ms: float = 0.0,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.duration_ms = duration_ms
        self.tags = dict(tags or {})


__all__ = ["ConfigError", "RequestError"]
