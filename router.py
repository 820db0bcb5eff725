# router.py
import httpx


def upstream_url(path: str, query: str, base_url: str) -> str:
    """Resolve the upstream URL for the given request path.

    The path (including its /v1 prefix) and query string are kept verbatim;
    only the scheme, host and port change.
    """
    url = base_url.rstrip("/") + path
    if query:
        url += f"?{query}"
    return url


def upstream_host(base_url: str) -> str:
    """Return the ``Host`` header value the upstream expects (host[:port])."""
    return httpx.URL(base_url).netloc.decode("ascii")
