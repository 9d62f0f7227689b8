"""Network helpers shared by the CLI and the server."""

from __future__ import annotations

from contextlib import closing
import ipaddress
import socket

from ..const import DEFAULT_BIND_HOST

_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def _strip_brackets(host: str) -> str:
    value = host.strip()
    if value.startswith("[") and value.endswith("]"):
        return value[1:-1]
    return value


def is_ipv6_host(host: str) -> bool:
    """Return True when ``host`` is an IPv6 literal, with or without brackets."""
    try:
        return isinstance(ipaddress.ip_address(_strip_brackets(host)), ipaddress.IPv6Address)
    except ValueError:
        return False


def is_port_available(host: str | None, port: int) -> bool:
    """
    Check whether ``port`` can be bound on ``host``.

    Parameters:
        host (str | None): Bind address; ``None`` or empty falls back to the default host.
        port (int): TCP port to probe.

    Returns:
        bool: True if binding succeeded, False if the address is in use or not bindable.
    """
    host = _strip_brackets(host or DEFAULT_BIND_HOST)
    family = socket.AF_INET6 if is_ipv6_host(host) else socket.AF_INET
    address = (host, port, 0, 0) if family == socket.AF_INET6 else (host, port)
    try:
        with closing(socket.socket(family, socket.SOCK_STREAM)) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(address)
    except OSError:
        return False
    return True


def base_url(host: str, port: int) -> str:
    """Client URL for a server bound to ``host``; wildcard binds map to loopback."""
    value = _strip_brackets(host)
    if value in _WILDCARD_HOSTS:
        value = "::1" if value == "::" else "127.0.0.1"
    if is_ipv6_host(value):
        value = f"[{value}]"
    return f"http://{value}:{port}"
