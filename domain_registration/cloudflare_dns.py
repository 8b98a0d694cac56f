"""
Cloudflare DNS provider for subdomain registration.
Implements A-record upsert and delete-by-value against the Cloudflare v4 API.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from errors import (
    CredentialError,
    DNSRecordAbsentError,
    ExternalPermanentError,
    ExternalTransientError,
)
from .models import ProviderCredentials, ZoneSummary

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"

# Cloudflare API error codes that mean the credentials themselves are bad.
_CREDENTIAL_ERROR_CODES = {6003, 6103, 9103, 9106, 9109, 10000, 10001}
# "Record does not exist" on a record-level call.
_RECORD_ABSENT_CODES = {81044}


class CloudflareDNSProvider:
    """
    Cloudflare DNS provider bound to one set of credentials.

    A new instance is built for every engine call from the credentials in
    force for that call, so concurrent calls under different credentials
    never share client state.
    """

    def __init__(
        self,
        credentials: ProviderCredentials,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
    ):
        """
        Initialize Cloudflare DNS provider.

        Args:
            credentials: ``secret`` is an API token, or the global API key
                when ``access_key`` carries the account email
            base_url: API root
            timeout: Per-request timeout in seconds
        """
        if not credentials or not credentials.secret:
            raise CredentialError("Cloudflare credentials are missing")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        if credentials.access_key:
            self.headers = {
                "X-Auth-Email": credentials.access_key,
                "X-Auth-Key": credentials.secret,
                "Content-Type": "application/json",
            }
        else:
            self.headers = {
                "Authorization": f"Bearer {credentials.secret}",
                "Content-Type": "application/json",
            }
        self._uses_token = not credentials.access_key

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict:
        """
        Make a request to the Cloudflare API and classify failures.

        Returns:
            The decoded response body when Cloudflare reports success

        Raises:
            CredentialError: Authentication or authorization rejected
            ExternalTransientError: Network failure, timeout, 429 or 5xx
            ExternalPermanentError: Any other rejection (with the API errors)
        """
        url = f"{self.base_url}/{endpoint}"
        try:
            response = requests.request(
                method.upper(),
                url,
                headers=self.headers,
                json=data,
                params=params,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Cloudflare request timed out: {method} {endpoint}")
            raise ExternalTransientError(
                f"Cloudflare request timed out: {e}", {"endpoint": endpoint}
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Request Error: {str(e)}")
            raise ExternalTransientError(
                f"Could not reach Cloudflare: {e}", {"endpoint": endpoint}
            )

        try:
            result = response.json()
        except ValueError:
            result = {}

        errors = result.get("errors") or []
        codes = {e.get("code") for e in errors if isinstance(e, dict)}
        error_msg = "; ".join(
            f"Code: {e.get('code')}, Message: {e.get('message')}"
            for e in errors
            if isinstance(e, dict)
        ) or f"HTTP {response.status_code}"
        details = {
            "endpoint": endpoint,
            "status_code": response.status_code,
            "errors": errors,
        }

        if response.status_code in (401, 403) or codes & _CREDENTIAL_ERROR_CODES:
            logger.error(f"Cloudflare rejected credentials: {error_msg}")
            raise CredentialError(f"Cloudflare rejected credentials: {error_msg}", details)
        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"Cloudflare unavailable: {error_msg}")
            raise ExternalTransientError(f"Cloudflare unavailable: {error_msg}", details)
        if codes & _RECORD_ABSENT_CODES:
            raise DNSRecordAbsentError(f"DNS record does not exist: {error_msg}", details)
        if response.status_code >= 400 or not result.get("success", False):
            logger.error(f"API Error: {error_msg}")
            if data:
                logger.debug(f"Request data: {json.dumps(data)}")
            raise ExternalPermanentError(f"Cloudflare API error: {error_msg}", details)

        return result

    def validate_credentials(self) -> bool:
        """
        Validate the credentials with a cheap authenticated call.

        Returns:
            True if Cloudflare accepts them

        Raises:
            CredentialError: If Cloudflare rejects them
        """
        endpoint = "user/tokens/verify" if self._uses_token else "user"
        self._make_request("GET", endpoint)
        logger.info("Cloudflare credential validation successful")
        return True

    def list_zones(self) -> List[ZoneSummary]:
        """
        List all zones visible to the credentials, following pagination.

        Returns:
            Zone summaries with trailing dots stripped from names
        """
        zones: List[ZoneSummary] = []
        page = 1
        total_pages = 1

        while page <= total_pages:
            result = self._make_request("GET", "zones", params={"page": page, "per_page": 50})
            for zone in result.get("result", []):
                zones.append(
                    ZoneSummary(
                        id=zone.get("id"),
                        name=zone.get("name", "").rstrip("."),
                        status=zone.get("status"),
                    )
                )
            result_info = result.get("result_info") or {}
            total_pages = result_info.get("total_pages", total_pages)
            page += 1

        logger.debug(f"Listed {len(zones)} zones")
        return zones

    def get_zone_apex(self, zone_id: str) -> str:
        """
        Get the apex name of a zone.

        Args:
            zone_id: Provider zone identifier

        Returns:
            Zone name without trailing dot, e.g. ``example.com``
        """
        result = self._make_request("GET", f"zones/{zone_id}")
        name = (result.get("result") or {}).get("name", "")
        if not name:
            raise ExternalPermanentError(
                f"Zone {zone_id} has no name", {"zone_id": zone_id}
            )
        return name.rstrip(".")

    def find_a_records(self, zone_id: str, fqdn: str) -> List[Dict[str, Any]]:
        """
        Get live A records for a name.

        Returns:
            Raw Cloudflare record objects (``id``, ``content``, ``ttl`` ...)
        """
        result = self._make_request(
            "GET",
            f"zones/{zone_id}/dns_records",
            params={"type": "A", "name": fqdn},
        )
        return result.get("result", [])

    def upsert_a(self, zone_id: str, fqdn: str, address: str, ttl: int) -> str:
        """
        Create the A record or overwrite the existing one for ``fqdn``.

        Extra A records for the same name are removed so the name resolves
        to exactly ``address`` afterwards.

        Args:
            zone_id: Provider zone identifier
            fqdn: Fully qualified record name
            address: IPv4 address
            ttl: Record TTL in seconds

        Returns:
            Provider record id
        """
        record_data = {
            "type": "A",
            "name": fqdn,
            "content": address,
            "ttl": ttl,
            "proxied": False,
        }
        existing = self.find_a_records(zone_id, fqdn)

        if existing:
            record_id = existing[0].get("id")
            logger.info(f"Updating A record {record_id} for {fqdn} -> {address}")
            self._make_request(
                "PUT", f"zones/{zone_id}/dns_records/{record_id}", record_data
            )
            for extra in existing[1:]:
                logger.debug(f"Deleting duplicate A record {extra.get('id')} for {fqdn}")
                try:
                    self._make_request(
                        "DELETE", f"zones/{zone_id}/dns_records/{extra.get('id')}"
                    )
                except DNSRecordAbsentError:
                    pass
            return record_id

        logger.info(f"Creating A record for {fqdn} -> {address}")
        result = self._make_request("POST", f"zones/{zone_id}/dns_records", record_data)
        record_id = (result.get("result") or {}).get("id")
        logger.info(f"Created A record {record_id} for {fqdn}")
        return record_id

    def delete_a(self, zone_id: str, fqdn: str, address: str, ttl: int) -> None:
        """
        Delete the A record whose name and value both match.

        Cloudflare deletes by record id, so the record is looked up by
        name, type and content first. ``ttl`` is part of the call contract
        but not needed to address the record here.

        Raises:
            DNSRecordAbsentError: If no record carries that name and value
        """
        matches = [
            r
            for r in self.find_a_records(zone_id, fqdn)
            if r.get("content") == address
        ]
        if not matches:
            raise DNSRecordAbsentError(
                f"No A record {fqdn} -> {address} in zone {zone_id}",
                {"zone_id": zone_id, "fqdn": fqdn, "address": address},
            )

        deleted = 0
        for record in matches:
            record_id = record.get("id")
            logger.info(f"Deleting A record {record_id} for {fqdn} -> {address} (ttl {ttl})")
            try:
                self._make_request("DELETE", f"zones/{zone_id}/dns_records/{record_id}")
                deleted += 1
            except ExternalPermanentError as e:
                # vanished between lookup and delete
                if isinstance(e, DNSRecordAbsentError) or e.details.get("status_code") == 404:
                    logger.debug(f"A record {record_id} already gone")
                    continue
                raise

        if not deleted:
            raise DNSRecordAbsentError(
                f"A record {fqdn} -> {address} disappeared before it could be deleted",
                {"zone_id": zone_id, "fqdn": fqdn, "address": address},
            )
