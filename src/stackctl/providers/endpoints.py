"""Network reachability primitives used by diagnostic checks."""
from __future__ import annotations

import socket
from collections.abc import Mapping
from typing import Protocol

import httpx


class EndpointError(RuntimeError):
    """Raised when an endpoint cannot be reached at all."""


class EndpointProber(Protocol):
    """HTTP, TCP and DNS probes against an instance's published ports."""

    def http_status(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float,
    ) -> int:
        """Return the HTTP status code of ``GET url``."""
        ...

    def tcp_open(self, host: str, port: int, *, timeout: float) -> bool:
        """Return ``True`` when a TCP connection to ``host:port`` succeeds."""
        ...

    def resolve(self, host: str) -> str:
        """Return an address for *host*."""
        ...


class HttpxProber:
    """Endpoint prober backed by :mod:`httpx` and :mod:`socket`."""

    def http_status(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float,
    ) -> int:
        """Return the HTTP status code of ``GET url``; transport errors raise."""
        try:
            with httpx.Client(timeout=timeout, follow_redirects=False) as client:
                response = client.get(url, headers=dict(headers or {}))
        except httpx.HTTPError as exc:
            raise EndpointError(f"GET {url} failed: {exc}") from exc
        return response.status_code

    def tcp_open(self, host: str, port: int, *, timeout: float) -> bool:
        """Return whether ``host:port`` accepts TCP connections."""
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    def resolve(self, host: str) -> str:
        """Resolve *host* to its first address."""
        try:
            return socket.gethostbyname(host)
        except OSError as exc:
            raise EndpointError(f"DNS lookup for {host} failed: {exc}") from exc


__all__ = ["EndpointError", "EndpointProber", "HttpxProber"]
