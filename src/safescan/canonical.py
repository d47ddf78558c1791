from __future__ import annotations

import hashlib
import re
import unicodedata
import urllib.parse

from safescan.models import Identifier

WEB_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
DEFAULT_PORTS = {"http": ":80", "https": ":443"}
HASH_HEX_CHARS = 16


def _is_noise(ch: str) -> bool:
    # Whitespace, C0/C1 controls and format characters such as zero-width spaces.
    return ch.isspace() or unicodedata.category(ch) in {"Cc", "Cf"}


def _to_text(raw: str | bytes) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def _canonical_netloc(scheme: str, netloc: str) -> str:
    userinfo, at, host_port = netloc.rpartition("@")
    host_port = host_port.lower()
    default_port = DEFAULT_PORTS.get(scheme)
    while default_port and host_port.endswith(default_port):
        host_port = host_port[: -len(default_port)]
    return f"{userinfo}{at}{host_port}"


def _canonical_web(text: str) -> str | None:
    try:
        parts = urllib.parse.urlsplit(text)
    except ValueError:
        return None
    if not parts.netloc:
        return None
    scheme = parts.scheme.lower()
    netloc = _canonical_netloc(scheme, parts.netloc)
    if not netloc:
        return None
    path = parts.path or "/"
    return urllib.parse.urlunsplit((scheme, netloc, path, parts.query, parts.fragment))


def canonical_text(raw: str | bytes) -> str:
    """Return the comparable form of a scanned payload.

    Idempotent: ``canonical_text(canonical_text(x)) == canonical_text(x)``.
    """
    text = "".join(ch for ch in _to_text(raw) if not _is_noise(ch))
    if WEB_SCHEME_RE.match(text):
        web = _canonical_web(text)
        if web is not None:
            return web
    return text


def identifier_hash(canonical: str) -> str:
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:HASH_HEX_CHARS]


def is_web_identifier(canonical: str) -> bool:
    return bool(WEB_SCHEME_RE.match(canonical)) and _canonical_web(canonical) is not None


def canonicalize(raw: str | bytes) -> Identifier | None:
    """Canonicalize a raw payload. Returns ``None`` for empty input.

    Payloads that are not http(s) URLs are still hashed (so they can be voted on) but are
    flagged ``is_web=False`` and skip the reputation lookup.
    """
    canonical = canonical_text(raw)
    if not canonical:
        return None
    return Identifier(
        canonical=canonical,
        hash=identifier_hash(canonical),
        is_web=is_web_identifier(canonical),
    )
