# config.py
import ipaddress
import logging

from pydantic import PrivateAttr
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_allow_list(value: str) -> tuple[Network, ...]:
    """Parse a CSV of addresses / CIDR blocks into networks.

    A plain address becomes a single-host network. Raises ValueError on the
    first entry that is neither.
    """
    networks = []
    for entry in (x.strip() for x in value.split(",")):
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            raise ValueError(f"Invalid ALLOWED_IPS entry: {entry!r}") from None
    return tuple(networks)


class Settings(BaseSettings):
    # Listener
    host: str = "0.0.0.0"       # HOST
    port: int = 3000            # PORT

    # Upstream (LM Studio OpenAI-compatible server)
    lm_studio_url: str = "http://localhost:1234"  # LM_STUDIO_URL

    # Matches Cloudflare's own 100 s origin timeout.
    proxy_timeout: float = 100.0  # PROXY_TIMEOUT (seconds)

    # Credential
    api_key: str = "sk-1234567890abcdef1234567890abcdef"  # API_KEY

    # Access control (CSV of IPs and CIDR blocks).
    # ALLOWED_IPS=203.0.113.7,10.0.0.0/8
    # If empty, every client address is allowed.
    allowed_ips: str = ""       # ALLOWED_IPS

    # cloudflared relays all traffic through localhost, so the IP filter
    # cannot see loopback callers' real address. When true they are admitted.
    trust_loopback: bool = True  # TRUST_LOOPBACK

    cors_origins: str = "*"     # CORS_ORIGINS
    log_level: str = "INFO"     # LOG_LEVEL

    # Parsed once at startup, not on every request.
    _allowed_networks: tuple[Network, ...] = PrivateAttr(default=())

    def model_post_init(self, __context) -> None:
        self._allowed_networks = parse_allow_list(self.allowed_ips)
        if not self.api_key.startswith("sk-"):
            logger.warning("API_KEY does not start with 'sk-'; every request will be rejected")

    @property
    def allowed_networks(self) -> tuple[Network, ...]:
        return self._allowed_networks

    @property
    def cors_origins_list(self) -> list[str]:
        return [x.strip() for x in self.cors_origins.split(",") if x.strip()]

    model_config = {"env_file": ".env", "case_sensitive": False, "frozen": True}


settings = Settings()
