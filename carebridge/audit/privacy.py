"""Privacy-preserving identifiers for audit records.

Raw user ids, addresses and user agents never reach the ledger. Each is
reduced (addresses to a network prefix, user agents to browser family and
major version) and then hashed with HMAC-SHA256 under a deployment secret,
so the hashes are stable for lookups but cannot be reversed by
enumerating candidate inputs without the secret.
"""

import hashlib
import hmac
import ipaddress
import re
from typing import Optional

IPV4_PREFIX = 24
IPV6_PREFIX = 48

UNKNOWN = "unknown"

_BROWSER_PATTERN = re.compile(r"(Chrome|Firefox|Safari|Edge)/(\d+)")


def truncate_ip(address: str) -> str:
    """
    Reduce an address to its network prefix.

    IPv4 keeps the first three octets (/24), IPv6 the first 48 bits.
    Only the first entry of a forwarded-for list is used.

    Args:
        address: Source address, optionally "client, proxy1, ..."

    Returns:
        Network address of the prefix, or "unknown" if unparseable
    """
    candidate = address.split(",")[0].strip()
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return UNKNOWN
    prefix = IPV4_PREFIX if ip.version == 4 else IPV6_PREFIX
    return str(ipaddress.ip_network(f"{ip}/{prefix}", strict=False).network_address)


def simplify_user_agent(user_agent: str) -> str:
    """Browser family and major version, e.g. "Chrome/120"."""
    match = _BROWSER_PATTERN.search(user_agent)
    return f"{match.group(1)}/{match.group(2)}" if match else UNKNOWN


class PrivacyHasher:
    """Keyed one-way hashing of personal identifiers."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("A hash secret is required")
        self._key = secret.encode("utf-8")

    def _digest(self, value: str) -> str:
        return hmac.new(self._key, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def hash_user_id(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        return self._digest(str(user_id))

    def hash_ip(self, address: Optional[str]) -> Optional[str]:
        if not address:
            return None
        return self._digest(truncate_ip(address))

    def hash_user_agent(self, user_agent: Optional[str]) -> Optional[str]:
        if not user_agent:
            return None
        return self._digest(simplify_user_agent(user_agent))
