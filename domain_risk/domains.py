"""
Domain Risk Engine - Domain and URL helpers.

Normalizes request URLs to registrable domains (the profile key),
and answers the small URL questions the calculators ask: host
relationships between referrers and sensitive-looking paths.
"""

import ipaddress
import re
from typing import Optional
from urllib.parse import urlsplit


# Suffixes under which the registrable name is one label deeper
PUBLIC_SUFFIXES = frozenset({
    "com", "org", "net", "edu", "gov", "co", "io", "ai", "app",
    "ru", "de", "uk", "fr", "it", "es", "jp", "cn", "br", "au",
    "co.uk", "com.br", "com.au", "co.jp", "ne.jp", "or.jp",
    "ac.uk", "gov.uk", "github.io", "cloudfront.net", "vercel.app",
    "pages.dev", "web.app", "firebaseapp.com",
})

SENSITIVE_PATH_PATTERN = re.compile(r"/(login|signin|auth|password|account|bank|payment|secure)")


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False


def extract_registrable_domain(hostname: str) -> str:
    """
    Reduce a hostname to its registrable domain.

    ``a.b.example.co.uk`` -> ``example.co.uk``; IP literals are kept
    as-is and any ``*.localhost`` collapses to ``localhost``.
    """
    if not hostname or not isinstance(hostname, str):
        return ""

    lower = hostname.strip().lower().rstrip(".")
    if not lower:
        return ""
    if _is_ip(lower):
        return lower
    if lower == "localhost" or lower.endswith(".localhost"):
        return "localhost"

    parts = lower.split(".")
    # Longest matching suffix wins (scan from the left)
    for i in range(1, len(parts)):
        suffix = ".".join(parts[i:])
        if suffix in PUBLIC_SUFFIXES:
            return ".".join(parts[i - 1:])

    if len(parts) > 2:
        return ".".join(parts[-2:])
    return lower


def extract_hostname(url: Optional[str]) -> str:
    """Lowercase hostname of a URL, or empty string if unparseable."""
    if not url or not isinstance(url, str):
        return ""
    candidate = url.strip()
    if "://" not in candidate:
        candidate = "https://" + candidate
    try:
        return (urlsplit(candidate).hostname or "").lower()
    except ValueError:
        return ""


def normalize_domain(url: Optional[str]) -> str:
    """
    Normalize a URL (or bare host) to the profile key.

    Returns:
        Registrable domain, or "" when nothing usable is present
    """
    if not url or not isinstance(url, str):
        return ""
    if re.match(r"^(data|blob|about|chrome|javascript):", url.strip(), re.IGNORECASE):
        return ""

    hostname = extract_hostname(url)
    if not hostname:
        # Fall back to the raw host-ish prefix
        hostname = url.strip().split("/")[0].split(":")[0]
    return extract_registrable_domain(hostname)


def is_subdomain(candidate: str, parent: str) -> bool:
    """True when ``candidate`` equals ``parent`` or sits below it."""
    if not candidate or not parent:
        return False
    c = candidate.lower()
    p = parent.lower()
    return c == p or c.endswith("." + p)


def hosts_related(url_a: Optional[str], url_b: Optional[str]) -> bool:
    """
    Compare the hosts of two URLs.

    Related means equal, or one is a subdomain of the other.
    Unparseable or missing input is never related.
    """
    host_a = extract_hostname(url_a)
    host_b = extract_hostname(url_b)
    if not host_a or not host_b:
        return False
    return is_subdomain(host_a, host_b) or is_subdomain(host_b, host_a)


def is_sensitive_path(url: Optional[str]) -> bool:
    """Does the URL path look like a login/payment/account page?"""
    if not url:
        return False
    candidate = url if "://" in url or url.startswith("/") else "https://" + url
    try:
        path = urlsplit(candidate).path.lower()
    except ValueError:
        return False
    return bool(SENSITIVE_PATH_PATTERN.search(path))


def second_level_label(domain: str) -> str:
    """
    The label that carries the name of a domain.

    ``sub.example.com`` -> ``example``; ``example.co.uk`` -> ``example``.
    A multi-part public suffix is assumed when the last two labels are
    both at most three characters long.
    """
    parts = [p for p in (domain or "").lower().split(".") if p != ""]
    if not parts:
        return ""
    if len(parts) < 2:
        return parts[0]

    last, second_last = parts[-1], parts[-2]
    if len(parts) >= 3 and len(last) <= 3 and len(second_last) <= 3:
        return parts[-3]
    return second_last


__all__ = [
    "PUBLIC_SUFFIXES",
    "extract_registrable_domain",
    "extract_hostname",
    "normalize_domain",
    "is_subdomain",
    "hosts_related",
    "is_sensitive_path",
    "second_level_label",
]
