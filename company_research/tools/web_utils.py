from __future__ import annotations

from urllib.parse import urlparse


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Hostname without a leading ``www.``; the raw input when it is not a URL."""
    if not is_valid_url(url):
        return url
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host or url


def truncate(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut text to max_length characters, marking the cut with a suffix."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + suffix
