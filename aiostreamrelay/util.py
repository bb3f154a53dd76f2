"""Utility functions for aiostreamrelay."""

from __future__ import annotations

import socket
from ipaddress import ip_address

_WILDCARD_HOSTS = {"", "0.0.0.0", "::", "localhost"}


def _is_advertisable(address: str) -> bool:
    """Return True for addresses other hosts on the network can reach."""
    try:
        addr = ip_address(address)
    except ValueError:
        return False
    return not (addr.is_link_local or addr.is_unspecified or addr.is_loopback)


def get_local_ip() -> str | None:
    """Get the address of the interface used for outbound traffic.

    Returns None if no network is available. No data is sent.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            result: str = s.getsockname()[0]
            return result
    except OSError:
        return None


def get_advertise_addresses(host: str) -> list[str]:
    """Get the addresses to announce via mDNS for a server listening on host.

    A concrete listen address is used as is, wildcard and loopback hosts fall
    back to the outbound interface address.
    """
    if host not in _WILDCARD_HOSTS and _is_advertisable(host):
        return [host]
    local_ip = get_local_ip()
    if local_ip is not None and _is_advertisable(local_ip):
        return [local_ip]
    return []
