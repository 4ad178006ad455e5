from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import urlsplit

from bridgekeeper.config import DEFAULT_ALLOWED_DOMAINS
from bridgekeeper.errors import DomainNotAllowedError

ALLOWED_SCHEMES = {"http", "https"}

# Chromium reads "\" as "/" and drops tabs and newlines, so such URLs can
# resolve to a different host than urlsplit reports.
_AMBIGUOUS = re.compile(r"[\\\s\x00-\x1f\x7f]")
_HOST = re.compile(r"[a-z0-9-]+(\.[a-z0-9-]+)*")


class DomainAllowList:
    """Navigation allow-list of domain suffixes.

    A host is allowed when it equals an entry or is a subdomain of one.
    Entries are matched as written, so ``www.example.com`` does not admit
    ``example.com`` or its other subdomains. Only consulted for navigation;
    other actions stay on the loaded page.
    """

    def __init__(self, domains: Iterable[str] = DEFAULT_ALLOWED_DOMAINS) -> None:
        normalized = {self._normalize_host(domain) for domain in domains}
        self._domains = frozenset(domain for domain in normalized if domain)

    @property
    def domains(self) -> tuple[str, ...]:
        return tuple(sorted(self._domains))

    def is_allowed(self, url: str) -> bool:
        hostname = self.hostname(url)
        if hostname is None:
            return False
        return any(hostname == domain or hostname.endswith(f".{domain}") for domain in self._domains)

    def check(self, url: str) -> None:
        if not self.is_allowed(url):
            raise DomainNotAllowedError(url)

    @classmethod
    def hostname(cls, url: str) -> str | None:
        """Return the normalized hostname of an http(s) URL, or None.

        URLs a browser could resolve differently are rejected outright:
        backslashes, whitespace or control characters anywhere, userinfo,
        and percent-encoding or non-ASCII in the host.
        """
        candidate = url.strip()
        if not candidate or _AMBIGUOUS.search(candidate):
            return None
        if "://" not in candidate:
            # Bare "example.com/path" is treated as https; other schemes such
            # as "javascript:" or "data:" still fail the scheme check below.
            head = candidate.split("/", 1)[0]
            if ":" in head and not head.rsplit(":", 1)[1].isdigit():
                return None
            candidate = f"https://{candidate}"

        try:
            parts = urlsplit(candidate)
            hostname = parts.hostname
        except ValueError:
            return None

        if parts.scheme.lower() not in ALLOWED_SCHEMES or not hostname:
            return None
        if "@" in parts.netloc or "%" in parts.netloc:
            return None

        try:
            hostname = hostname.encode("idna").decode("ascii")
        except UnicodeError:
            return None

        hostname = cls._normalize_host(hostname)
        if not _HOST.fullmatch(hostname):
            return None
        return hostname

    @staticmethod
    def _normalize_host(host: str) -> str:
        return host.strip().lower().rstrip(".")
