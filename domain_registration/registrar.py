"""
Domain registrar: creates and removes subdomain A records and keeps the
local DomainRecords consistent with what the DNS provider actually serves.
"""

import logging
import re
from typing import Callable, List, Optional

from errors import CredentialError, DNSRecordAbsentError, NotFoundError, ValidationError
from .credentials import CredentialProvider
from .locks import KeyedLock
from .models import DomainRecord, ProviderCredentials, ZoneSummary, new_id, utcnow
from .public_address import PublicAddressDiscovery
from .store import LifecycleStore

logger = logging.getLogger(__name__)

LABEL_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")
DEFAULT_TTL = 300

DNSProviderFactory = Callable[[ProviderCredentials], object]


def validate_label(label: str) -> str:
    """Check a subdomain label is non-empty and made of letters, digits and hyphens."""
    if not isinstance(label, str) or not LABEL_PATTERN.match(label):
        raise ValidationError(
            "Subdomain can only contain letters, numbers, and hyphens",
            {"label": label},
        )
    if len(label) > 63:
        raise ValidationError("Subdomain label is longer than 63 characters", {"label": label})
    return label


class DomainRegistrar:
    """Creates, deletes and reconciles subdomain A records."""

    def __init__(
        self,
        store: LifecycleStore,
        credential_provider: CredentialProvider,
        address_discovery: PublicAddressDiscovery,
        dns_provider_factory: DNSProviderFactory,
        locks: Optional[KeyedLock] = None,
        ttl: int = DEFAULT_TTL,
    ):
        """
        Initialize the registrar.

        Args:
            store: Lifecycle store holding DomainRecords
            credential_provider: Source of the active DNS credentials
            address_discovery: Resolves the host's current public IPv4
            dns_provider_factory: Builds a DNS provider client from credentials
            locks: Lease registry shared with the certificate manager
            ttl: TTL applied to every A record
        """
        self.store = store
        self.credential_provider = credential_provider
        self.address_discovery = address_discovery
        self.dns_provider_factory = dns_provider_factory
        self.locks = locks or KeyedLock()
        self.ttl = ttl

    def _provider(self, credentials: Optional[ProviderCredentials]):
        if credentials is None:
            credentials = self.credential_provider.get_active()
        if credentials is None:
            raise CredentialError("DNS provider credentials not configured")
        return self.dns_provider_factory(credentials)

    @staticmethod
    def _lease_key(fqdn: str) -> str:
        return f"domain:{fqdn.lower()}"

    def list_zones(
        self, credentials: Optional[ProviderCredentials] = None
    ) -> List[ZoneSummary]:
        """List the provider's zones. Always read-through."""
        return self._provider(credentials).list_zones()

    def get(self, record_id: str) -> DomainRecord:
        return self.store.get_domain(record_id)

    def list_records(self, zone_id: Optional[str] = None) -> List[DomainRecord]:
        return self.store.list_domains(zone_id)

    def create(
        self,
        label: str,
        zone_id: str,
        credentials: Optional[ProviderCredentials] = None,
    ) -> DomainRecord:
        """
        Point ``label.<zone apex>`` at the host's current public address.

        Re-running for an existing name overwrites the remote record and
        updates the local one in place, so the call is idempotent and heals
        address drift.

        Args:
            label: Subdomain label
            zone_id: Provider zone identifier
            credentials: Explicit credentials; the provider's active set
                is used when omitted

        Returns:
            The persisted DomainRecord

        Raises:
            ValidationError, CredentialError, ExternalTransientError,
            ExternalPermanentError, StorageError
        """
        validate_label(label)
        if not zone_id:
            raise ValidationError("Zone id is required", {"zone_id": zone_id})

        provider = self._provider(credentials)
        address = self.address_discovery.get_current_address()
        apex = provider.get_zone_apex(zone_id)
        fqdn = f"{label}.{apex}".rstrip(".").lower()

        with self.locks.lease(self._lease_key(fqdn)):
            provider.upsert_a(zone_id, fqdn, address, self.ttl)

            now = utcnow()
            with self.store.transaction() as txn:
                record = txn.find_domain_by_fqdn(fqdn)
                if record:
                    if record.target_address != address:
                        logger.info(
                            f"Address for {fqdn} moved {record.target_address} -> {address}"
                        )
                    record.target_address = address
                    record.zone_id = zone_id
                    record.label = label
                    record.updated_at = now
                else:
                    record = DomainRecord(
                        id=new_id(label.lower()),
                        label=label,
                        zone_id=zone_id,
                        fqdn=fqdn,
                        target_address=address,
                        created_at=now,
                        updated_at=now,
                    )
                txn.put_domain(record)

        logger.info(f"Subdomain {fqdn} -> {address} registered ({record.id})")
        return record

    def delete(
        self, record_id: str, credentials: Optional[ProviderCredentials] = None
    ) -> None:
        """
        Remove the A record carrying the recorded name and address, then the
        local record. An already-absent remote record counts as deleted.

        Raises:
            NotFoundError: If the record id is unknown
        """
        record = self.store.get_domain(record_id)
        provider = self._provider(credentials)

        with self.locks.lease(self._lease_key(record.fqdn)):
            record = self.store.get_domain(record_id)
            try:
                provider.delete_a(
                    record.zone_id, record.fqdn, record.target_address, self.ttl
                )
            except DNSRecordAbsentError:
                logger.warning(
                    f"A record {record.fqdn} -> {record.target_address} already absent"
                )
            self.store.delete_domain(record_id)

        logger.info(f"Subdomain {record.fqdn} deleted ({record_id})")

    def is_orphaned(
        self, record: DomainRecord, credentials: Optional[ProviderCredentials] = None
    ) -> bool:
        """
        Check whether the provider still serves the recorded name and address.

        Returns:
            True if no live A record matches both
        """
        live = self._provider(credentials).find_a_records(record.zone_id, record.fqdn)
        return not any(r.get("content") == record.target_address for r in live)

    def reconcile(
        self,
        record_id: str,
        drop: bool = False,
        credentials: Optional[ProviderCredentials] = None,
    ) -> Optional[DomainRecord]:
        """
        Bring an orphaned record back in line with the provider.

        Args:
            record_id: DomainRecord id
            drop: Remove the local record instead of recreating the A record
            credentials: Explicit credentials

        Returns:
            The (possibly updated) record, or None when it was dropped
        """
        record = self.store.get_domain(record_id)
        provider = self._provider(credentials)

        with self.locks.lease(self._lease_key(record.fqdn)):
            record = self.store.get_domain(record_id)
            live = provider.find_a_records(record.zone_id, record.fqdn)
            if any(r.get("content") == record.target_address for r in live):
                logger.debug(f"{record.fqdn} is in sync")
                return record

            if drop:
                self.store.delete_domain(record_id)
                logger.info(f"Dropped orphaned record {record.fqdn} ({record_id})")
                return None

            address = self.address_discovery.get_current_address()
            provider.upsert_a(record.zone_id, record.fqdn, address, self.ttl)
            with self.store.transaction() as txn:
                current = txn.get_domain(record_id)
                if current is None:
                    raise NotFoundError(
                        f"Domain record {record_id} not found", {"domain_record_id": record_id}
                    )
                current.target_address = address
                current.updated_at = utcnow()
                txn.put_domain(current)
            record = current

        logger.info(f"Recreated orphaned record {record.fqdn} -> {address}")
        return record
