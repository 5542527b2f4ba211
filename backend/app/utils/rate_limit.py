"""Per-client admission control for statement parse requests."""

import ipaddress
import logging
import math
import time
from collections import OrderedDict, deque
from functools import lru_cache
from threading import Lock
from typing import Optional

from fastapi import Request

from app.core.config import get_settings

logger = logging.getLogger(__name__)

PARSE_WINDOW_SECONDS = 60
_MAX_TRACKED_CLIENTS = 10_000


class ParseRateLimiter:
    """Admit at most ``limit`` parse requests per client in a rolling window.

    Clients are kept in least-recently-seen order. Once more than
    ``max_clients`` are tracked, idle clients are evicted first and then the
    least recently seen ones.
    """

    def __init__(
        self,
        *,
        window_seconds: int = PARSE_WINDOW_SECONDS,
        max_clients: int = _MAX_TRACKED_CLIENTS,
    ) -> None:
        self.window_seconds = window_seconds
        self._max_clients = max(1, int(max_clients))
        self._clients: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = Lock()

    def admit(self, client: str, limit: int) -> Optional[int]:
        """Record a parse request from *client*.

        Returns ``None`` when the request is admitted, otherwise the seconds
        until the oldest request in the window expires (the ``Retry-After``
        value). A non-positive *limit* admits everything.
        """
        if limit <= 0:
            return None
        now = time.monotonic()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._clients.setdefault(client, deque())
            self._clients.move_to_end(client)
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return max(1, math.ceil(hits[0] + self.window_seconds - now))
            hits.append(now)
            if len(self._clients) > self._max_clients:
                self._evict(cutoff)
            return None

    def _evict(self, cutoff: float) -> None:
        # Called under lock; the current client sits at the end and survives.
        idle = [key for key, hits in self._clients.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._clients[key]
        while len(self._clients) > self._max_clients:
            self._clients.popitem(last=False)

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._clients)

    def reset(self) -> None:
        with self._lock:
            self._clients.clear()


parse_rate_limiter = ParseRateLimiter()


@lru_cache(maxsize=16)
def _proxy_networks(cidrs: tuple[str, ...]) -> tuple:
    networks = []
    for entry in cidrs:
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid TRUSTED_PROXY_CIDRS entry %r", entry)
    return tuple(networks)


def _is_trusted_proxy(peer_ip: str, cidrs: list[str]) -> bool:
    try:
        address = ipaddress.ip_address(peer_ip)
    except ValueError:
        return False
    return any(address in network for network in _proxy_networks(tuple(cidrs)))


def client_ip(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> Optional[str]:
    """Return the address a parse request is attributed to.

    Forwarded headers are honoured only when the direct peer is inside
    ``TRUSTED_PROXY_CIDRS``; the rightmost ``X-Forwarded-For`` hop is the one
    appended by that proxy.
    """
    peer_ip = request.client.host if request.client else None
    cidrs = get_settings().trusted_proxy_cidrs if trusted_proxy_cidrs is None else trusted_proxy_cidrs
    if not peer_ip or not cidrs or not _is_trusted_proxy(peer_ip, cidrs):
        return peer_ip

    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    if hops:
        return hops[-1]
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    return real_ip or peer_ip
