# admission.py
import enum
import ipaddress
import logging
from typing import Iterable, Mapping

from config import Network

logger = logging.getLogger(__name__)

UNKNOWN_ADDRESS = "unknown"


class AdmissionFailure(enum.Enum):
    NO_ADDRESS = "no_address"
    NOT_ALLOWED = "not_allowed"


_FAILURE_BODIES: dict[AdmissionFailure, dict[str, str]] = {
    AdmissionFailure.NO_ADDRESS: {"error": "Unable to determine client IP"},
    AdmissionFailure.NOT_ALLOWED: {"error": "IP address not allowed"},
}


def failure_body(failure: AdmissionFailure) -> dict[str, str]:
    return dict(_FAILURE_BODIES[failure])


def resolve_client_ip(headers: Mapping[str, str], peer: str | None) -> str:
    """Best guess at the original caller's address.

    Priority: Cloudflare's CF-Connecting-IP, the peer address reported by the
    ASGI server, the first X-Forwarded-For hop, X-Real-IP. Returns
    ``"unknown"`` when none is present.
    """
    forwarded_for = headers.get("x-forwarded-for")
    candidates = (
        headers.get("cf-connecting-ip"),
        peer,
        forwarded_for.split(",")[0] if forwarded_for else None,
        headers.get("x-real-ip"),
    )
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return UNKNOWN_ADDRESS


def _parse_address(address: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return None
    # ::ffff:10.1.2.3 is how dual-stack listeners report IPv4 peers.
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def is_loopback(address: str) -> bool:
    ip = _parse_address(address)
    return ip is not None and ip.is_loopback


class AllowList:
    """IP / CIDR admission filter.

    An empty list admits everyone. With ``trust_loopback`` set, loopback
    callers are admitted regardless of the entries: behind a local tunnel
    daemon every request arrives from 127.0.0.1, so only the API key
    protects the upstream.
    """

    def __init__(self, networks: Iterable[Network], trust_loopback: bool = True) -> None:
        self.networks = tuple(networks)
        self.trust_loopback = trust_loopback

    def __bool__(self) -> bool:
        return bool(self.networks)

    def __str__(self) -> str:
        return ", ".join(str(n) for n in self.networks)

    def admit(self, address: str) -> AdmissionFailure | None:
        """Return None when ``address`` may reach the upstream."""
        if not self.networks:
            return None
        if not address or address == UNKNOWN_ADDRESS:
            return AdmissionFailure.NO_ADDRESS
        if self.trust_loopback and is_loopback(address):
            logger.debug("Loopback bypass for %s", address)
            return None

        ip = _parse_address(address)
        if ip is not None and any(ip in network for network in self.networks):
            return None
        return AdmissionFailure.NOT_ALLOWED
