"""Relay resolution.

Merges the relay candidates known to a signer into the single ordered list it
connects to. Trusted sources (environment override, explicit caller relays,
configured defaults) are taken as given; relays embedded in a group credential
are attacker-influenced and must pass :func:`is_safe_relay_url` first.

Precedence:

* environment override present: ``explicit + env``
* otherwise: ``explicit + defaults + group``

Every list is normalised to ``wss://`` and de-duplicated by
:func:`canonical_key`, first occurrence wins.
"""
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from credentials import decode_group
from relay_config import FileRelayConfig

logger = logging.getLogger(__name__)

DEFAULT_RELAYS = [
    "wss://relay.primal.net",
    "wss://relay.damus.io",
]

SECURE_SCHEME = "wss"
DEFAULT_PORTS = {"wss": 443, "ws": 80}

GROUP_RELAY_FIELDS = ("relays", "relayUrls", "relay_urls")

_SCHEME_RE = re.compile(r"^(?:wss?|https?)://", re.IGNORECASE)
_FALLBACK_KEY_RE = re.compile(r"^(wss?)://([^/?#]+)(.*)$", re.IGNORECASE)
# Numeric hosts the resolver reads as IPv4: 127.1, 2130706433, 0x7f000001, 0177.0.0.1
_NUMERIC_HOST_RE = re.compile(r"^[0-9][0-9a-fx.]*$")

_BLOCKED_NETWORKS = [
    ipaddress.ip_network(n)
    for n in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::/128",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
    )
]


class RelayConfigurationError(RuntimeError):
    """No relay source, not even the built-in fallback, produced a relay."""


@dataclass
class RelayPlan:
    relays: List[str]
    env_relays: List[str] = field(default_factory=list)
    default_relays: List[str] = field(default_factory=list)
    group_relays: List[str] = field(default_factory=list)
    explicit_relays: List[str] = field(default_factory=list)
    group_extras: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "relays": list(self.relays),
            "envRelays": list(self.env_relays),
            "defaultRelays": list(self.default_relays),
            "groupRelays": list(self.group_relays),
            "explicitRelays": list(self.explicit_relays),
            "groupExtras": list(self.group_extras),
        }


@dataclass
class RelayValidation:
    is_valid: bool
    normalized: Optional[str] = None
    message: Optional[str] = None


def normalize_relay_url(raw) -> str:
    """Trim ``raw`` and force the ``wss://`` scheme.

    Returns ``""`` for blank input and for input with embedded whitespace.
    """
    trimmed = str(raw if raw is not None else "").strip()
    if not trimmed or any(c.isspace() for c in trimmed):
        return ""
    match = _SCHEME_RE.match(trimmed)
    if match:
        return "wss://" + trimmed[match.end():]
    return "wss://" + trimmed


def canonical_key(url: str) -> str:
    """Key used for relay equality: case-folded scheme and host, explicit port."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port
        if not parts.scheme or not host:
            raise ValueError(url)
    except ValueError:
        match = _FALLBACK_KEY_RE.match(url)
        if match:
            return "%s://%s%s" % (match.group(1).lower(), match.group(2).lower(), match.group(3))
        return url
    scheme = parts.scheme.lower()
    netloc = "[%s]" % host if ":" in host else host
    if port is not None and port != DEFAULT_PORTS.get(scheme):
        netloc += ":%d" % port
    key = "%s://%s%s" % (scheme, netloc, parts.path or "/")
    if parts.query:
        key += "?" + parts.query
    if parts.fragment:
        key += "#" + parts.fragment
    return key


def _unwrap_ipv4(ip):
    if ip.version != 6:
        return ip
    if ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    # IPv4-compatible form (::a.b.c.d); :: and ::1 keep their IPv6 meaning.
    if ip.packed[:12] == bytes(12) and int(ip) > 1:
        return ipaddress.IPv4Address(ip.packed[12:])
    return ip


def _numeric_ipv4(host: str):
    """Read ``host`` the way the system resolver does, or ``None``."""
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except OSError:
        return None


def is_blocked_host(host: str) -> bool:
    host = host.lower().rstrip(".")
    if host == "localhost" or host.endswith(".localhost"):
        return True
    if _NUMERIC_HOST_RE.match(host):
        ip = _numeric_ipv4(host)
        if ip is None:
            return True
    else:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return False
    ip = _unwrap_ipv4(ip)
    return any(ip in net for net in _BLOCKED_NETWORKS if net.version == ip.version)


def is_safe_relay_url(url: str) -> bool:
    """SSRF check for untrusted relay URLs, by literal host inspection only."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
        parts.port
    except ValueError:
        return False
    if parts.scheme.lower() != SECURE_SCHEME or not host:
        return False
    return not is_blocked_host(host)


def validate_relay_url(raw) -> RelayValidation:
    """Normalise and vet a single user-entered relay URL."""
    if raw is None or not str(raw).strip():
        return RelayValidation(False, message="Relay URL is required")
    normalized = normalize_relay_url(raw)
    if not normalized:
        return RelayValidation(False, message="Relay URL must not contain whitespace")
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    try:
        parts = urlsplit(normalized)
        host = parts.hostname
        parts.port
    except ValueError:
        return RelayValidation(False, message="Invalid relay URL format")
    if not host:
        return RelayValidation(False, message="Invalid relay URL format")
    if is_blocked_host(host):
        return RelayValidation(False, message="Relay URL points to a local or private address")
    return RelayValidation(True, normalized=normalized)


def dedupe_relays(values: Iterable[str]) -> List[str]:
    seen = set()
    output = []
    for value in values:
        key = canonical_key(value)
        if key in seen:
            continue
        seen.add(key)
        output.append(value)
    return output


def normalize_relay_list(candidates: Any) -> List[str]:
    if not isinstance(candidates, (list, tuple)):
        return []
    normalized = (normalize_relay_url(v) for v in candidates if isinstance(v, str))
    return dedupe_relays(v for v in normalized if v)


def extract_group_relays(source: Any) -> Optional[list]:
    """First list-valued relay field on a decoded group, or ``None``."""
    if source is None:
        return None
    for name in GROUP_RELAY_FIELDS:
        if isinstance(source, dict):
            value = source.get(name)
        else:
            value = getattr(source, name, None)
        if isinstance(value, (list, tuple)):
            return list(value)
    return None


def _group_candidates(group_credential, decoded_group, decoder) -> Optional[list]:
    candidates = extract_group_relays(decoded_group)
    if candidates is not None:
        return candidates
    if not isinstance(group_credential, str) or not group_credential.strip():
        return None
    try:
        return extract_group_relays(decoder(group_credential.strip()))
    except Exception as exc:
        logger.debug("Group credential did not decode; ignoring its relays: %s", exc)
        return None


def compute_relay_plan(
    group_credential: Optional[str] = None,
    decoded_group: Any = None,
    explicit_relays: Optional[List[str]] = None,
    env_relay: Optional[str] = None,
    base_relays: Optional[List[str]] = None,
    config=None,
    fallback_relays: Optional[List[str]] = None,
    decoder: Callable[[str], Any] = decode_group,
) -> RelayPlan:
    """Resolve the relays a signer should connect to.

    ``config`` supplies the optional relay override file (defaults to
    :class:`relay_config.FileRelayConfig`); when it yields relays they replace
    ``base_relays`` as the default list. ``fallback_relays`` (defaults to
    :data:`DEFAULT_RELAYS`) is used only when every source came up empty.

    Raises :class:`RelayConfigurationError` if even the fallback is empty.
    """
    config = config if config is not None else FileRelayConfig()
    fallback = DEFAULT_RELAYS if fallback_relays is None else fallback_relays

    env = normalize_relay_list([env_relay] if env_relay else [])
    explicit = normalize_relay_list(explicit_relays)
    group = [
        r for r in normalize_relay_list(_group_candidates(group_credential, decoded_group, decoder))
        if is_safe_relay_url(r)
    ]

    configured = config.configured_relays()
    if configured:
        defaults = normalize_relay_list(configured)
    else:
        defaults = normalize_relay_list(DEFAULT_RELAYS if base_relays is None else base_relays)

    if env:
        relays = dedupe_relays(explicit + env)
    else:
        relays = dedupe_relays(explicit + defaults + group)

    if not relays:
        relays = normalize_relay_list(fallback)
        if not relays:
            raise RelayConfigurationError("No relays configured and no fallback relays available")
        logger.warning("All relay sources empty; using fallback relays %s", relays)

    default_keys = {canonical_key(r) for r in defaults}
    group_extras = [r for r in group if canonical_key(r) not in default_keys]

    return RelayPlan(
        relays=relays,
        env_relays=env,
        default_relays=defaults,
        group_relays=group,
        explicit_relays=explicit,
        group_extras=group_extras,
    )
