"""
Main engine service.
Wires the registrar, certificate manager and host probe together and runs
their blocking calls off the event loop.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from env_config import EngineConfig
from domain_registration.acme_client import CertbotAuthority, CertificateAuthority, ChallengeHandlers
from domain_registration.cert_manager import CertificateLifecycleManager
from domain_registration.cloudflare_dns import CloudflareDNSProvider
from domain_registration.credentials import EncryptedCredentialStore
from domain_registration.installers import build_installer_registry
from domain_registration.key_store import SecretStore
from domain_registration.locks import KeyedLock
from domain_registration.models import (
    CertificateRecord,
    CertificateStatus,
    DomainRecord,
    InstallResult,
    ProviderCredentials,
    ZoneSummary,
)
from domain_registration.public_address import PublicAddressDiscovery
from domain_registration.registrar import DomainRegistrar
from domain_registration.store import LifecycleStore
from host_probe.detector import HostProbe
from host_probe.models import ScanResult

logger = logging.getLogger(__name__)

# Global service instance
_engine_service: Optional["EngineService"] = None


class EngineService:
    """Process-wide owner of the engine components."""

    def __init__(
        self,
        store: LifecycleStore,
        credentials: EncryptedCredentialStore,
        address_discovery: PublicAddressDiscovery,
        registrar: DomainRegistrar,
        cert_manager: CertificateLifecycleManager,
        host_probe: HostProbe,
        dns_provider_factory: Callable[[ProviderCredentials], Any],
        admin_token: Optional[str] = None,
    ):
        self.store = store
        self.credentials = credentials
        self.address_discovery = address_discovery
        self.registrar = registrar
        self.cert_manager = cert_manager
        self.host_probe = host_probe
        self.dns_provider_factory = dns_provider_factory
        self.admin_token = admin_token
        self._initialized = False
        self._started_at: Optional[datetime] = None
        self._recovered: List[str] = []

    @classmethod
    def from_config(
        cls, config: EngineConfig, authority: Optional[CertificateAuthority] = None
    ) -> "EngineService":
        """
        Build every component from configuration.

        Args:
            config: Engine configuration
            authority: Certificate authority to use instead of certbot
        """
        store = LifecycleStore(config.store_path)
        locks = KeyedLock(timeout=config.lease_timeout)
        credentials = EncryptedCredentialStore(config.credentials_path, config.credentials_key)
        address_discovery = PublicAddressDiscovery(config.public_ip_url, config.public_ip_timeout)

        def dns_provider_factory(creds: ProviderCredentials) -> CloudflareDNSProvider:
            return CloudflareDNSProvider(
                creds, base_url=config.dns_api_base_url, timeout=config.dns_request_timeout
            )

        registrar = DomainRegistrar(
            store,
            credentials,
            address_discovery,
            dns_provider_factory,
            locks=locks,
            ttl=config.dns_record_ttl,
        )
        if authority is None:
            authority = CertbotAuthority(
                config.acme_email,
                server=config.acme_server,
                config_dir=config.certbot_dir,
                timeout=config.ca_timeout,
            )
        cert_manager = CertificateLifecycleManager(
            store,
            registrar,
            authority,
            SecretStore(config.secrets_dir),
            build_installer_registry(
                config.nginx_conf_dir,
                config.apache_conf_dir,
                config.install_instructions_dir,
                timeout=config.installer_command_timeout,
                webroot=config.acme_webroot or "/var/www/html",
                proxy_upstream=config.install_proxy_upstream,
            ),
            ChallengeHandlers(
                webroot=config.acme_webroot, standalone_port=config.acme_standalone_port
            ),
            locks=locks,
        )
        host_probe = HostProbe(
            host=config.probe_host,
            ports=config.probe_ports,
            connect_timeout=config.probe_connect_timeout,
            liveness_timeout=config.probe_liveness_timeout,
            version_timeout=config.probe_version_timeout,
            workers=config.probe_workers,
        )
        return cls(
            store,
            credentials,
            address_discovery,
            registrar,
            cert_manager,
            host_probe,
            dns_provider_factory,
            admin_token=config.admin_token,
        )

    @staticmethod
    async def _call(fn: Callable, *args, **kwargs):
        return await asyncio.to_thread(partial(fn, *args, **kwargs))

    async def initialize(self) -> bool:
        """
        Initialize the engine service.

        Fails any certificate left mid-issuance by a previous process.
        """
        if self._initialized:
            logger.debug("Engine service already initialized")
            return True

        logger.info("Initializing engine service")
        self._recovered = await self._call(self.cert_manager.recover_interrupted)
        if self._recovered:
            logger.warning(f"Marked {len(self._recovered)} interrupted certificate request(s) failed")

        self._initialized = True
        self._started_at = datetime.now(timezone.utc)
        logger.info("Engine service initialized successfully")
        return True

    # Public address and zones

    async def get_public_address(self) -> str:
        return await self._call(self.address_discovery.get_current_address)

    async def list_zones(self) -> List[ZoneSummary]:
        return await self._call(self.registrar.list_zones)

    # Subdomains

    async def create_subdomain(self, label: str, zone_id: str) -> DomainRecord:
        return await self._call(self.registrar.create, label, zone_id)

    async def get_subdomain(self, record_id: str) -> DomainRecord:
        return await self._call(self.registrar.get, record_id)

    async def list_subdomains(self, zone_id: Optional[str] = None) -> List[DomainRecord]:
        return await self._call(self.registrar.list_records, zone_id)

    async def delete_subdomain(self, record_id: str) -> None:
        await self._call(self.registrar.delete, record_id)

    async def reconcile_subdomain(self, record_id: str, drop: bool = False) -> Optional[DomainRecord]:
        return await self._call(self.registrar.reconcile, record_id, drop)

    # Credentials

    async def get_credentials_status(self) -> Dict[str, Any]:
        return await self._call(self.credentials.status)

    async def save_credentials(self, credentials: ProviderCredentials) -> None:
        """Check credentials against the DNS provider, then store them."""
        provider = self.dns_provider_factory(credentials)
        await self._call(provider.validate_credentials)
        await self._call(self.credentials.save, credentials)

    async def delete_credentials(self) -> None:
        await self._call(self.credentials.delete)

    # Certificates

    async def request_certificate(self, domain_record_id: str, port: int) -> CertificateRecord:
        return await self._call(self.cert_manager.request_certificate, domain_record_id, port)

    async def install_certificate(self, certificate_id: str, server_type: str) -> InstallResult:
        return await self._call(self.cert_manager.install_certificate, certificate_id, server_type)

    async def get_certificate(self, certificate_id: str) -> CertificateRecord:
        return await self._call(self.cert_manager.get, certificate_id)

    async def list_certificates(self, domain_record_id: Optional[str] = None) -> List[CertificateRecord]:
        return await self._call(self.cert_manager.list_certificates, domain_record_id)

    async def revoke_certificate(self, certificate_id: str) -> CertificateRecord:
        return await self._call(self.cert_manager.revoke, certificate_id)

    async def delete_certificate(self, certificate_id: str, force: bool = False) -> None:
        await self._call(self.cert_manager.delete, certificate_id, force)

    # Host probe

    async def scan_ports(self, ports: Optional[List[int]] = None) -> ScanResult:
        return await self._call(self.host_probe.scan_ports, ports)

    async def detect(self) -> Dict[str, Any]:
        """Run a detection pass; returns that pass's ``{last_scan, detections}``."""
        return await self._call(self.host_probe.detect_snapshot)

    async def last_scan(self) -> Dict[str, Any]:
        return self.host_probe.last_scan()

    async def get_status(self) -> Dict[str, Any]:
        """
        Get current status of the engine.

        Returns:
            Status dictionary
        """
        domains = await self._call(self.store.list_domains)
        certificates = await self._call(self.store.list_certificates)
        by_status = {status.value: 0 for status in CertificateStatus}
        for record in certificates:
            by_status[record.status.value] += 1
        scan = self.host_probe.last_scan()

        return {
            "initialized": self._initialized,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "subdomains": len(domains),
            "certificates": by_status,
            "recovered_certificates": list(self._recovered),
            "credentials": await self.get_credentials_status(),
            "host_probe": {
                "last_scan": scan["last_scan"].isoformat() if scan["last_scan"] else None,
                "detections": len(scan["detections"]),
            },
        }

    async def cleanup(self) -> None:
        logger.info("Cleaning up engine service")
        self._initialized = False
        logger.info("Engine service cleanup completed")


def get_engine_service() -> Optional[EngineService]:
    """
    Get the global engine service instance.

    Returns:
        Engine service instance or None
    """
    return _engine_service


def set_engine_service(service: Optional[EngineService]) -> None:
    """
    Set the global engine service instance.

    Args:
        service: Engine service instance
    """
    global _engine_service
    _engine_service = service


async def initialize_engine_service(config: Optional[EngineConfig] = None) -> bool:
    """
    Initialize the global engine service, building it from ``config`` when
    none has been set.

    Returns:
        True if initialization successful
    """
    global _engine_service

    if _engine_service is None:
        _engine_service = EngineService.from_config(config)

    return await _engine_service.initialize()


async def cleanup_engine_service() -> None:
    """Cleanup the global engine service."""
    global _engine_service

    if _engine_service:
        await _engine_service.cleanup()
        _engine_service = None
