from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from agent_hub.runtime.errors import LifecycleError


logger = logging.getLogger(__name__)


# Status code reported for each domain error code when a function fails.
ERROR_STATUS: dict[str, int] = {
    "invalid_argument": 400,
    "unauthenticated": 401,
    "not_found": 404,
    "conflict": 409,
    "invalid_transition": 409,
}


@dataclass(frozen=True)
class FunctionError:
    message: str
    status: int | None = None
    code: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class FunctionResponse:
    """Result of a named function call: exactly one of `data` / `error` is meaningful."""

    data: Any = None
    error: FunctionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


FunctionHandler = Callable[[dict[str, Any], Mapping[str, str]], Any]


class FunctionsClient(Protocol):
    def invoke(
        self, name: str, body: dict[str, Any], *, headers: Mapping[str, str] | None = None
    ) -> FunctionResponse: ...


def error_from_exception(exc: Exception) -> FunctionError:
    if isinstance(exc, LifecycleError):
        return FunctionError(
            message=exc.message,
            status=ERROR_STATUS.get(exc.code, 400),
            code=exc.code,
            details=exc.details,
        )
    return FunctionError(message=str(exc) or type(exc).__name__, status=500, code="internal")


class LocalFunctionsClient:
    """Dispatches named functions to in-process handlers.

    Handlers receive `(body, headers)` and return the response data; a raised
    exception becomes `FunctionResponse.error`.
    """

    def __init__(self, handlers: Mapping[str, FunctionHandler] | None = None) -> None:
        self._handlers: dict[str, FunctionHandler] = dict(handlers or {})

    def register(self, name: str, handler: FunctionHandler) -> None:
        self._handlers[name] = handler

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def invoke(
        self, name: str, body: dict[str, Any], *, headers: Mapping[str, str] | None = None
    ) -> FunctionResponse:
        handler = self._handlers.get(name)
        if handler is None:
            return FunctionResponse(error=FunctionError(message=f"Unknown function: {name}", status=404, code="not_found"))
        try:
            return FunctionResponse(data=handler(dict(body or {}), dict(headers or {})))
        except Exception as e:
            if not isinstance(e, LifecycleError):
                logger.exception("Function %s failed", name)
            return FunctionResponse(error=error_from_exception(e))


class HttpFunctionsClient:
    """POSTs JSON bodies to `<base_url>/<name>` and decodes `{error}` envelopes."""

    def __init__(self, *, base_url: str | None = None, api_key: str | None = None, timeout_s: float = 30.0) -> None:
        self.base_url = (base_url or os.getenv("AGENT_HUB_FUNCTIONS_URL") or "").rstrip("/")
        self.api_key = api_key or os.getenv("AGENT_HUB_FUNCTIONS_KEY") or None
        self.timeout_s = float(timeout_s)
        if not self.base_url:
            raise ValueError("Missing AGENT_HUB_FUNCTIONS_URL (or provide base_url explicitly).")

    def invoke(
        self, name: str, body: dict[str, Any], *, headers: Mapping[str, str] | None = None
    ) -> FunctionResponse:
        req_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            req_headers["Authorization"] = f"Bearer {self.api_key}"
        req_headers.update(headers or {})

        req = urllib.request.Request(
            f"{self.base_url}/{name}",
            data=json.dumps(body or {}).encode("utf-8"),
            headers=req_headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            body_text = ""
            try:
                body_text = e.read().decode("utf-8", errors="replace")
            except Exception:
                body_text = ""
            return FunctionResponse(error=_error_from_body(body_text, status=int(e.code)))
        except urllib.error.URLError as e:
            return FunctionResponse(error=FunctionError(message=f"Network error for {name}: {e.reason}"))

        try:
            return FunctionResponse(data=json.loads(raw) if raw.strip() else None)
        except ValueError:
            return FunctionResponse(error=FunctionError(message=f"Invalid JSON from {name}", status=502))


def _error_from_body(text: str, *, status: int) -> FunctionError:
    try:
        obj = json.loads(text)
    except ValueError:
        return FunctionError(message=(text[:200] or f"HTTP {status}"), status=status)
    err = obj.get("error") if isinstance(obj, dict) else None
    if isinstance(err, dict):
        return FunctionError(
            message=str(err.get("message") or f"HTTP {status}"),
            status=status,
            code=err.get("code"),
            details=err.get("details"),
        )
    if isinstance(err, str):
        return FunctionError(message=err, status=status)
    return FunctionError(message=f"HTTP {status}", status=status)
