"""
Backend Prober

Plain TCP reachability check for the primary PostgreSQL server. No protocol
handshake is attempted: if the port accepts a connection the primary backend
is considered available.
"""
import socket
import logging

logger = logging.getLogger(__name__)


def probe(host: str, port: int, timeout: float = 3.0) -> bool:
    """
    Check whether host:port accepts TCP connections.

    Args:
        host: Primary backend host
        port: Primary backend port
        timeout: Connect timeout (seconds)

    Returns:
        True if the connection succeeded within the timeout, False otherwise.
        Refused, timed out and unresolvable hosts all count as unavailable.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            logger.debug(f"PostgreSQL reachable at {host}:{port}")
            return True
    except (OSError, OverflowError, ValueError) as e:
        logger.warning(f"Could not connect to PostgreSQL at {host}:{port}: {e}")
        return False
