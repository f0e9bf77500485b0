"""SOCKS4 request and reply messages and the firewall that screens requests."""

from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from typing import Iterable

SOCKS_VERSION = 4
CONNECT = 1
BIND = 2
REQUEST_GRANTED = 90
REQUEST_REJECTED = 91
REPLY_SIZE = 8

_COMMAND_LETTERS = {"CONNECT": "c", "BIND": "b"}


@dataclass(frozen=True)
class SocksRequest:
    """A decoded SOCKS4 or SOCKS4A request.

    ``domain`` is set for SOCKS4A requests, whose address field is the
    placeholder ``0.0.0.x`` and whose destination is given by name.
    """

    version: int
    command: int
    port: int
    address: str
    user_id: str = ""
    domain: str | None = None

    @property
    def command_name(self) -> str:
        return "CONNECT" if self.command == CONNECT else "BIND"


@dataclass(frozen=True)
class FirewallRule:
    """One line of the firewall file: ``<action> <c|b> <address pattern>``."""

    action: str
    command: str
    pattern: str

    def applies_to(self, command_name: str) -> bool:
        return self.command == _command_letter(command_name)


def _command_letter(command_name: str) -> str:
    try:
        return _COMMAND_LETTERS[command_name]
    except KeyError:
        raise ValueError(f"unknown SOCKS command: {command_name!r}") from None


def parse_request(data: bytes) -> SocksRequest:
    """Decode a SOCKS4/4A request; ValueError if it is too short."""
    if len(data) < 8:
        raise ValueError("SOCKS request shorter than 8 bytes")
    version, command = data[0], data[1]
    port = int.from_bytes(data[2:4], "big")
    address = ".".join(str(octet) for octet in data[4:8])
    fields = data[8:].split(b"\0")
    user_id = fields[0].decode("latin-1")
    domain = None
    if data[4:7] == b"\0\0\0" and data[7] != 0:
        if len(fields) < 2 or not fields[1]:
            raise ValueError("SOCKS4A request without a domain name")
        domain = fields[1].decode("latin-1")
    return SocksRequest(version, command, port, address, user_id, domain)


def parse_rule(line: str) -> FirewallRule:
    """Read one firewall line; ValueError if it lacks a field."""
    parts = line.split(None, 2)
    if len(parts) != 3:
        raise ValueError(f"malformed firewall rule: {line!r}")
    action, command, pattern = parts
    return FirewallRule(action, command, pattern.strip())


def load_rules(path: str | os.PathLike) -> list[FirewallRule]:
    """All well-formed rules in a firewall file; none if it cannot be read."""
    try:
        with open(path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError:
        return []
    rules = []
    for line in lines:
        try:
            rules.append(parse_rule(line))
        except ValueError:
            continue
    return rules


def ip_matches(pattern: str, address: str) -> bool:
    """Compare dotted octets left to right; ``*`` matches everything after it."""
    pattern_parts = pattern.split(".")
    address_parts = address.split(".")
    for position in range(4):
        wanted = pattern_parts[position] if position < len(pattern_parts) else ""
        actual = address_parts[position] if position < len(address_parts) else ""
        if wanted == "*":
            return True
        if wanted != actual:
            return False
    return True


def is_permitted(rules: Iterable[FirewallRule], command: str, address: str) -> bool:
    """True if some rule for ``command`` (CONNECT or BIND) matches ``address``.

    The rule's action word is not consulted: a matching line admits the request.
    """
    letter = _command_letter(command)
    return any(
        rule.command == letter and ip_matches(rule.pattern, address) for rule in rules
    )


def build_reply(granted: bool, port: int = 0) -> bytes:
    """The 8-byte SOCKS4 reply, carrying ``port`` for BIND replies."""
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    status = REQUEST_GRANTED if granted else REQUEST_REJECTED
    return bytes([0, status]) + port.to_bytes(2, "big") + bytes(4)


def build_request(port: int, address: str) -> bytes:
    """A SOCKS4 CONNECT request for an IPv4 address, with an empty user id."""
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    packed = ipaddress.IPv4Address(address).packed
    return bytes([SOCKS_VERSION, CONNECT]) + port.to_bytes(2, "big") + packed + b"\0"