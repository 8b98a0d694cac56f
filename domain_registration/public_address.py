"""
Public IPv4 discovery for the host running the engine.
"""

import ipaddress
import logging

import requests

from errors import ExternalPermanentError, ExternalTransientError

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_URL = "https://api.ipify.org?format=json"


class PublicAddressDiscovery:
    """Asks an IP echo service which address the host egresses from."""

    def __init__(self, url: str = DEFAULT_DISCOVERY_URL, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def get_current_address(self) -> str:
        """
        Get the current public IPv4 address.

        Returns:
            Dotted-quad IPv4 string

        Raises:
            ExternalTransientError: If the echo service cannot be reached
            ExternalPermanentError: If it answers with something that is
                not an IPv4 address
        """
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to get public IP: {e}")
            raise ExternalTransientError(
                f"Failed to get public IP address: {e}", {"url": self.url}
            )

        try:
            payload = response.json()
        except ValueError:
            raise ExternalPermanentError(
                "Public IP service returned a non-JSON body", {"url": self.url}
            )
        if not isinstance(payload, dict):
            payload = {}

        address = str(payload.get("ip", "")).strip()
        try:
            ipaddress.IPv4Address(address)
        except ValueError:
            raise ExternalPermanentError(
                f"Public IP service returned an invalid IPv4 address: {address!r}",
                {"url": self.url},
            )

        logger.debug(f"Current public address is {address}")
        return address
