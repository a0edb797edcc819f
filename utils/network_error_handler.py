"""
Network error handling.

Maps streaming transport failures to user-facing messages and diagnoses
endpoint reachability, including overlay networks (Tailscale 100.64.0.0/10).
"""

import asyncio
import ipaddress
import logging
import socket
from contextlib import closing
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import psutil
from websockets.exceptions import (
    ConnectionClosed,
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

logger = logging.getLogger(__name__)

# Carrier-grade NAT range used by Tailscale for tailnet addresses
OVERLAY_NETWORK = ipaddress.ip_network("100.64.0.0/10")

DEFAULT_WS_PORTS = {"ws": 80, "wss": 443}


def parse_endpoint(url: str) -> Tuple[Optional[str], Optional[int]]:
    """
    Extract host and port from a ``ws://`` / ``wss://`` URL.

    Returns:
        ``(host, port)``; either part is ``None`` when it cannot be determined
    """
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return None, None

    if port is None:
        port = DEFAULT_WS_PORTS.get(parsed.scheme)
    return parsed.hostname, port


def check_endpoint_reachable(url: str, timeout: float = 3.0) -> bool:
    """
    Check whether a TCP connection to the endpoint's host and port succeeds.

    Args:
        url: Endpoint URL
        timeout: Connect timeout in seconds

    Returns:
        Whether the endpoint accepted a TCP connection
    """
    host, port = parse_endpoint(url)
    if not host or not port:
        return False

    try:
        with closing(socket.create_connection((host, port), timeout=timeout)):
            return True
    except OSError as exc:
        logger.debug("Endpoint %s unreachable: %s", url, exc)
        return False


def is_overlay_address(host: Optional[str]) -> bool:
    """Return ``True`` when ``host`` is a literal address inside 100.64.0.0/10."""
    if not host:
        return False
    try:
        return ipaddress.ip_address(host) in OVERLAY_NETWORK
    except ValueError:
        return False


def get_overlay_interfaces() -> List[Dict[str, str]]:
    """
    List local interfaces holding an overlay-network address.

    Returns:
        List of ``{"interface": name, "address": ip}`` entries
    """
    interfaces = []
    try:
        addresses = psutil.net_if_addrs()
    except (OSError, RuntimeError) as exc:
        logger.warning(f"Failed to enumerate network interfaces: {exc}")
        return interfaces

    for name, entries in addresses.items():
        for entry in entries:
            if entry.family != socket.AF_INET:
                continue
            if is_overlay_address(entry.address):
                interfaces.append({"interface": name, "address": entry.address})

    return interfaces


def is_overlay_network_connected() -> bool:
    """Return ``True`` when at least one overlay-network interface is up."""
    return bool(get_overlay_interfaces())


def diagnose_endpoints(endpoints: Sequence[str]) -> Optional[str]:
    """
    Explain why a list of endpoints might be unreachable.

    Only overlay-network endpoints can be diagnosed locally: when every
    candidate lives on the tailnet and no local interface holds a tailnet
    address, the overlay network is down.

    Returns:
        Hint for the user, or ``None`` when nothing specific can be said
    """
    hosts = [parse_endpoint(url)[0] for url in endpoints]
    if not hosts or not all(is_overlay_address(host) for host in hosts):
        return None

    if is_overlay_network_connected():
        return None

    return "Tailscale appears to be disconnected; connect to the tailnet and try again"


def get_network_error_message(error: BaseException) -> Tuple[str, str]:
    """
    Get a user-facing message and suggestion for a transport failure.

    Args:
        error: Exception raised while connecting or streaming

    Returns:
        ``(message, suggestion)`` tuple
    """
    if isinstance(error, InvalidURI):
        message = "Invalid server address"
        suggestion = "Check the server URL in the configuration"

    elif isinstance(error, InvalidHandshake):
        message = "Server rejected the connection"
        suggestion = "Check that the address points to a VoxRelay server"

    elif isinstance(error, ConnectionClosed):
        code = error.rcvd.code if error.rcvd is not None else None
        if code == 1000:
            message = "Server closed the connection"
        else:
            message = f"Connection lost (code {code})" if code else "Connection lost"
        suggestion = "Start a new session to reconnect"

    elif isinstance(error, WebSocketException):
        message = "WebSocket protocol error"
        suggestion = "Check server and client versions"

    elif isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        message = "Connection timed out"
        suggestion = "Check the network speed, or try again later"

    elif isinstance(error, ConnectionRefusedError):
        message = "Connection refused"
        suggestion = "Check that the translation server is running"

    elif isinstance(error, socket.gaierror):
        message = "Server name could not be resolved"
        suggestion = "Check the server address and DNS settings"

    elif isinstance(error, OSError):
        message = "Network error"
        suggestion = "Check the network connection"

    else:
        message = f"Network error: {type(error).__name__}"
        suggestion = "Check the network connection"

    return message, suggestion
