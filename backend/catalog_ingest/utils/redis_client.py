"""Helper to create Redis clients with SSL support for hosted providers."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client with sane timeouts and TLS handling.

    Hosted providers (Upstash and similar) require ``rediss://`` and ship
    certificates that are not in the default trust store.
    """
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    kwargs.setdefault("socket_connect_timeout", 5)
    kwargs.setdefault("socket_timeout", 5)
    if url.startswith("rediss://"):
        kwargs.setdefault("ssl_cert_reqs", ssl.CERT_NONE)

    return Redis.from_url(url, **kwargs)
