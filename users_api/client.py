"""HTTP client for calling the password check endpoint from another service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from opentelemetry.propagate import inject
from opentelemetry.trace import SpanKind

from .telemetry import NullTelemetrySink, OpenTelemetrySink, record_error


class AuthClientError(RuntimeError):
    """Raised when the users service cannot answer a password check."""


@dataclass
class _ClientConfig:
    base_url: str
    timeout: float


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Service base URL must not be empty")
    return cleaned.rstrip("/")


class AuthClient:
    """Check credentials against a running users service.

    The outgoing request carries W3C trace context headers so the server-side
    spans join the caller's trace.
    """

    def __init__(
        self,
        base_url: str,
        *,
        telemetry: Optional[OpenTelemetrySink] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._config = _ClientConfig(base_url=_normalize_base_url(base_url), timeout=timeout)
        self._telemetry = telemetry if telemetry is not None else NullTelemetrySink()
        self._tracer = self._telemetry.tracer_provider.get_tracer("users_api.client")
        self._transport = transport

    def check_password(self, user_id: int | str, password: str) -> bool:
        """Return ``True`` when the service accepts the credentials."""

        url = f"{self._config.base_url}/user/auth"
        with self._tracer.start_as_current_span(
            "callDownstream",
            kind=SpanKind.CLIENT,
            attributes={"http.request.method": "POST", "url.full": url},
            record_exception=False,
        ) as span:
            headers: Dict[str, str] = {}
            inject(headers)

            try:
                with httpx.Client(transport=self._transport, timeout=self._config.timeout) as client:
                    response = client.post(
                        url,
                        data={"id": str(user_id), "password": password},
                        headers=headers,
                    )
            except httpx.RequestError as exc:
                record_error(span, exc)
                raise AuthClientError(f"Failed to contact users service: {exc}") from exc

            span.set_attribute("http.response.status_code", response.status_code)

            if response.status_code == 200:
                return True
            if response.status_code == 401:
                return False

            error = AuthClientError(
                f"Users service responded with {response.status_code}: {response.text.strip()}"
            )
            record_error(span, error)
            raise error


__all__ = ["AuthClient", "AuthClientError"]
