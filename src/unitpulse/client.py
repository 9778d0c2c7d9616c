# src/unitpulse/client.py

"""HTTP client for posting events to a running ingress."""

from __future__ import annotations

from typing import Any

import httpx

from unitpulse.errors import UnitpulseError


class IngressRejected(UnitpulseError):
    """The ingress answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}")


def build_event(
    table: str,
    node_type: str,
    hostname: str,
    data: list[dict[str, Any]] | dict[str, Any],
    send_immediately: bool = False,
    upload_timeout: str = "",
) -> dict[str, Any]:
    """Assemble an ingress event body."""
    return {
        "table": table,
        "node_type": node_type,
        "hostname": hostname,
        "send_immediately": send_immediately,
        "upload_timeout": upload_timeout,
        "data": data,
    }


class IngressClient:
    """Posts events to the daemon's HTTP ingress.

    Simple and stateless: posts or throws. Callers decide about retries.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def post_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Send one event and return the decoded response.

        Raises:
            httpx.HTTPError: If the ingress can't be reached
            IngressRejected: If the ingress answers with an error status
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=event)

        if response.is_error:
            try:
                message = response.json().get("error", response.text)
            except ValueError:
                message = response.text
            raise IngressRejected(response.status_code, message)
        return response.json()

    async def health(self) -> dict[str, Any]:
        """Fetch the ingress health snapshot."""
        base = httpx.URL(self.url).copy_with(path="/health")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(base)
        response.raise_for_status()
        return response.json()
