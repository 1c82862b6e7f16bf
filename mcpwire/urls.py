"""URL and path helpers shared by the HTTP transports."""

from __future__ import annotations

import re
from urllib.parse import SplitResult, parse_qs, unquote, urlsplit

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _split(url: str) -> SplitResult:
    if any(ord(char) < 0x20 or char == "\x7f" for char in url):
        raise ValueError("invalid control character in URL")
    if _BAD_ESCAPE.search(url):
        raise ValueError("invalid URL escape")
    parts = urlsplit(url)
    parts.port  # raises ValueError on a malformed port
    return parts


def validate_base_url(base_url: str) -> str | None:
    """Return ``base_url`` without one trailing slash if it is usable, else None.

    A usable base URL is empty, or an http(s) URL with a host and no query
    parameters.
    """
    if base_url:
        try:
            parts = _split(base_url)
        except ValueError:
            return None
        if parts.scheme not in ("http", "https"):
            return None
        host = parts.netloc.rpartition("@")[2]
        if not host or host.startswith(":"):
            return None
        if parse_qs(parts.query, keep_blank_values=True):
            return None
    return base_url.removesuffix("/")


def url_path(url: str) -> str:
    """Return the decoded path of ``url``; raise ValueError if it cannot be parsed."""
    try:
        parts = _split(url)
    except ValueError as exc:
        raise ValueError(f"failed to parse URL {url}: {exc}") from exc
    return unquote(parts.path)


def _clean(path: str) -> str:
    if not path:
        return "."
    rooted = path.startswith("/")
    segments: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if segments and segments[-1] != "..":
                segments.pop()
            elif not rooted:
                segments.append("..")
            continue
        segments.append(segment)
    cleaned = "/".join(segments)
    if rooted:
        return "/" + cleaned
    return cleaned or "."


def normalize_url_path(*args: str) -> str:
    """Join path elements into a clean path with a leading and no trailing slash."""
    elements = [element for element in args if element]
    joined = _clean("/".join(elements)) if elements else ""
    if not joined.startswith("/"):
        joined = "/" + joined
    if len(joined) > 1 and joined.endswith("/"):
        joined = joined[:-1]
    return joined