"""HTTP health probe against a listen address.

The probe answers one question: does *some* worker accept a connection
and answer an HTTP request?  Any response, whatever its status, counts
as healthy; connection errors and timeouts do not.  Error details are
never surfaced to the caller.
"""

from __future__ import annotations

import httpx

from refork.core.logging import get_logger
from refork.runtime.listeners import parse_address

logger = get_logger(__name__)


def probe_url(address: str, path: str = "/") -> tuple[str, httpx.HTTPTransport | None]:
    """URL and transport for an HTTP request to *address*."""
    if not path.startswith("/"):
        path = "/" + path
    parsed = parse_address(address)
    if parsed.is_unix:
        return f"http://localhost{path}", httpx.HTTPTransport(uds=parsed.path)
    host = parsed.host
    if host in ("0.0.0.0", ""):
        host = "127.0.0.1"
    elif host == "::":
        host = "::1"
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{parsed.port}{path}", None


def probe(address: str, timeout: float = 1.0, path: str = "/") -> bool:
    """Return True iff an HTTP request to *address* gets any response."""
    url, transport = probe_url(address, path)
    try:
        with httpx.Client(transport=transport, timeout=timeout) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        logger.debug("probe_failed", address=address, error=type(exc).__name__)
        return False
    logger.debug("probe_ok", address=address, status=response.status_code)
    return True


__all__ = ["probe", "probe_url"]
