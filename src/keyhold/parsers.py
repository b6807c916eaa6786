"""Validation of connection option values."""

from __future__ import annotations

import ipaddress
import re

from .errors import ParseError

# Node IDs are base32hex multibase strings, prefixed with ``v``.
NODE_ID_RE = re.compile(r"^v[0-9a-v]+$")


def parse_node_id(value: str) -> str:
    candidate = value.strip()
    if not NODE_ID_RE.match(candidate):
        raise ParseError(f"Node ID must be multibase base32hex encoded strings: {value!r}")
    return candidate


def parse_host(value: str) -> str:
    candidate = value.strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError as exc:
        raise ParseError(f"Host must be an IPv4 or IPv6 address: {value!r}") from exc


def parse_port(value: "str | int") -> int:
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Port must be a number: {value!r}") from exc
    if not 0 <= port <= 65535:
        raise ParseError(f"Port must be a number between 0 and 65535 inclusive: {value!r}")
    return port
