"""
Routing service - loads route rules and matches them against the Host header.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

WILDCARD = "*"

# Characters allowed in a Host header value (names, IPv4, bracketed IPv6, port)
_HOST_PATTERN = re.compile(r"^[A-Za-z0-9._\-\[\]:]+$")


@dataclass(frozen=True)
class RouteRule:
    """Sends requests whose host contains `host_match` to an upstream."""
    host_match: str
    upstream_host: str
    upstream_port: int

    @property
    def is_default(self) -> bool:
        return self.host_match in ("", WILDCARD)

    @property
    def upstream(self) -> str:
        return f"{self.upstream_host}:{self.upstream_port}"

    @property
    def base_url(self) -> str:
        return f"http://{self.upstream}"

    def matches(self, host: str) -> bool:
        return self.is_default or self.host_match in host


@dataclass(frozen=True)
class RouteTable:
    """Ordered route rules, the last one always being the wildcard default."""
    rules: Tuple[RouteRule, ...]

    def __post_init__(self):
        if not self.rules:
            raise ValueError("No rules defined in route table")
        if not self.rules[-1].is_default:
            raise ValueError("Last rule must be the wildcard default")
        for i, rule in enumerate(self.rules[:-1]):
            if rule.is_default:
                raise ValueError(f"Rule {i} is a wildcard but is not the last rule")

    @property
    def default(self) -> RouteRule:
        return self.rules[-1]


def normalize_host(value: Optional[str]) -> str:
    """
    Normalize a Host header value for matching.

    Strips the port suffix and a trailing dot and lowercases the rest.
    Absent or malformed values normalize to "" so that only the default rule matches.
    """
    if not value:
        return ""
    value = value.strip()
    if not _HOST_PATTERN.match(value):
        return ""

    if value.startswith("["):
        # Bracketed IPv6 literal, e.g. [::1]:8080
        end = value.find("]")
        if end == -1:
            return ""
        host, rest = value[:end + 1], value[end + 1:]
        if rest and not (rest.startswith(":") and rest[1:].isdigit()):
            return ""
    else:
        host, sep, port = value.partition(":")
        if sep and not port.isdigit():
            return ""

    return host.rstrip(".").lower()


def find_matching_rule(host: Optional[str], rules: Tuple[RouteRule, ...]) -> RouteRule:
    """
    Find the first rule whose match string is contained in the normalized host.

    The list always ends with the wildcard, so a rule is always returned.
    """
    normalized = normalize_host(host)
    for rule in rules:
        if rule.matches(normalized):
            return rule
    raise ValueError("Route table has no default rule")


def parse_upstream(value: Any) -> Tuple[str, int]:
    """
    Parse a "host:port" upstream string.

    Raises:
        ValueError: If the value is not a host followed by a valid port
    """
    if not isinstance(value, str):
        raise ValueError(f"Upstream must be a 'host:port' string, got {value!r}")
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Invalid upstream '{value}', expected 'host:port'")
    port_number = int(port)
    if not 1 <= port_number <= 65535:
        raise ValueError(f"Invalid upstream port in '{value}'")
    return host, port_number


def _make_rule(host_match: str, upstream: Any) -> RouteRule:
    upstream_host, upstream_port = parse_upstream(upstream)
    return RouteRule(
        host_match=host_match.strip().lower(),
        upstream_host=upstream_host,
        upstream_port=upstream_port
    )


def reference_rules(domain: str, api_upstream: str, app_upstream: str) -> RouteTable:
    """
    Rules of the reference deployment.

    The API rule comes first since the bare domain is a substring of the API host.
    """
    domain = domain.strip().lower()
    return RouteTable(rules=(
        _make_rule(f"api.{domain}", api_upstream),
        _make_rule(domain, app_upstream),
        _make_rule(WILDCARD, app_upstream),
    ))


def load_route_table(path: str) -> RouteTable:
    """
    Load route rules from a JSON file.

    Format:
        {"rules": [{"host": "api.example.com", "upstream": "localhost:3015"}, ...],
         "default": "localhost:3002"}

    "default" is required unless the last rule already has host "*".

    Raises:
        ValueError: If the file is missing, not valid JSON, or a rule is malformed
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ValueError(f"Route file not found: {path}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in route file: {e}")

    if not isinstance(data, dict):
        raise ValueError("Route file must contain a JSON object")

    rules_data = data.get("rules", [])
    if not rules_data:
        raise ValueError("No rules defined in route file")

    rules: List[RouteRule] = []
    for i, rule_data in enumerate(rules_data):
        if not isinstance(rule_data, dict):
            raise ValueError(f"Rule {i} must be an object")
        if "host" not in rule_data:
            raise ValueError(f"Rule {i} missing required 'host' field")
        if "upstream" not in rule_data:
            raise ValueError(f"Rule {i} missing required 'upstream' field")
        rules.append(_make_rule(str(rule_data["host"]), rule_data["upstream"]))

    default = data.get("default")
    if default is not None:
        if rules[-1].is_default:
            raise ValueError("Route file has both a wildcard rule and a 'default' upstream")
        rules.append(_make_rule(WILDCARD, default))
    elif not rules[-1].is_default:
        raise ValueError("Route file needs a 'default' upstream or a final '*' rule")

    return RouteTable(rules=tuple(rules))


def build_route_table(config: Any) -> RouteTable:
    """Route table from the configured file, or the reference deployment rules."""
    if config.proxy_routes_file:
        return load_route_table(config.proxy_routes_file)
    return reference_rules(
        config.proxy_public_domain,
        config.proxy_api_upstream,
        config.proxy_app_upstream
    )
