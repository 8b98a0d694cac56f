"""
Shared fixtures: in-memory stand-ins for the DNS provider, public address
service, certificate authority and web server installers.
"""

import itertools
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import DNSRecordAbsentError, EngineError, ExternalPermanentError  # noqa: E402
from domain_registration.acme_client import CertificateAuthority, ChallengeHandlers  # noqa: E402
from domain_registration.cert_manager import CertificateLifecycleManager  # noqa: E402
from domain_registration.credentials import StaticCredentialProvider  # noqa: E402
from domain_registration.installers import InstallerRegistry, ServerInstaller  # noqa: E402
from domain_registration.key_store import SecretStore  # noqa: E402
from domain_registration.locks import KeyedLock  # noqa: E402
from domain_registration.models import (  # noqa: E402
    InstallBundle,
    InstallResult,
    IssuedCertificate,
    ProviderCredentials,
    ZoneSummary,
)
from domain_registration.registrar import DomainRegistrar  # noqa: E402
from domain_registration.store import LifecycleStore  # noqa: E402


class FakeDNSProvider:
    """Zone data shared by every provider instance built from the factory."""

    def __init__(self, zones: Dict[str, str]):
        self.zones = zones
        self.records: Dict[tuple, List[dict]] = {}
        self.calls: List[tuple] = []
        self.credentials_seen: List[ProviderCredentials] = []
        self.fail_with: Optional[EngineError] = None
        self.during_upsert: Optional[Callable[[str, str], None]] = None
        self._ids = itertools.count(1)

    def factory(self, credentials: ProviderCredentials) -> "FakeDNSProvider":
        self.credentials_seen.append(credentials)
        return self

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def validate_credentials(self) -> bool:
        self._check()
        return True

    def list_zones(self) -> List[ZoneSummary]:
        self._check()
        return [ZoneSummary(id=k, name=v, status="active") for k, v in self.zones.items()]

    def get_zone_apex(self, zone_id: str) -> str:
        self._check()
        if zone_id not in self.zones:
            raise ExternalPermanentError(f"Unknown zone {zone_id}")
        return self.zones[zone_id]

    def find_a_records(self, zone_id: str, fqdn: str) -> List[dict]:
        self._check()
        return list(self.records.get((zone_id, fqdn), []))

    def upsert_a(self, zone_id: str, fqdn: str, address: str, ttl: int) -> str:
        self._check()
        self.calls.append(("upsert", zone_id, fqdn, address, ttl))
        if self.during_upsert is not None:
            self.during_upsert(zone_id, fqdn)
        record = {"id": f"rec{next(self._ids)}", "content": address, "ttl": ttl}
        self.records[(zone_id, fqdn)] = [record]
        return record["id"]

    def delete_a(self, zone_id: str, fqdn: str, address: str, ttl: int) -> None:
        self._check()
        self.calls.append(("delete", zone_id, fqdn, address, ttl))
        live = self.records.get((zone_id, fqdn), [])
        remaining = [r for r in live if r["content"] != address]
        if len(remaining) == len(live):
            raise DNSRecordAbsentError(f"No A record {fqdn} -> {address}")
        self.records[(zone_id, fqdn)] = remaining


class FakeAddressDiscovery:
    def __init__(self, address: str = "203.0.113.9"):
        self.address = address

    def get_current_address(self) -> str:
        return self.address


class FakeAuthority(CertificateAuthority):
    """Signs CSRs with a throwaway CA, 90 days validity."""

    def __init__(self, validity_days: int = 90):
        self.validity_days = validity_days
        self.fail_with: Optional[Exception] = None
        self.requests: List[str] = []
        self.ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test CA")])

    def request_certificate(
        self, csr_pem: bytes, fqdn: str, challenge_handlers: ChallengeHandlers
    ) -> IssuedCertificate:
        self.requests.append(fqdn)
        if self.fail_with is not None:
            raise self.fail_with

        csr = x509.load_pem_x509_csr(csr_pem)
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self.ca_name)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=self.validity_days))
            .add_extension(
                csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value,
                critical=False,
            )
            .sign(self.ca_key, hashes.SHA256())
        )
        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        chain_pem = b"-----BEGIN CERTIFICATE-----\ntest-ca\n-----END CERTIFICATE-----\n"
        return IssuedCertificate(
            cert_pem=cert_pem,
            chain_pem=chain_pem,
            fullchain_pem=cert_pem + chain_pem,
            valid_from=cert.not_valid_before_utc,
            valid_to=cert.not_valid_after_utc,
        )


class FakeInstaller(ServerInstaller):
    def __init__(self, server_type: str = "nginx"):
        self.server_type = server_type
        self.bundles: List[InstallBundle] = []
        self.succeed = True
        self.raise_error: Optional[EngineError] = None
        self.during_install: Optional[Callable[[InstallBundle], None]] = None

    def install(self, bundle: InstallBundle) -> InstallResult:
        self.bundles.append(bundle)
        if self.during_install is not None:
            self.during_install(bundle)
        if self.raise_error is not None:
            raise self.raise_error
        if not self.succeed:
            return InstallResult(
                success=False,
                detail="Configuration test failed: unexpected token",
                server_type=self.server_type,
                steps=["Wrote configuration"],
            )
        return InstallResult(
            success=True,
            detail=f"SSL certificate installed for {bundle.fqdn}",
            server_type=self.server_type,
            steps=["Wrote configuration", "Reloaded"],
        )


@pytest.fixture
def dns():
    return FakeDNSProvider({"Z1": "example.com", "Z2": "example.org"})


@pytest.fixture
def address():
    return FakeAddressDiscovery()


@pytest.fixture
def store(tmp_path):
    return LifecycleStore(str(tmp_path / "lifecycle.json"))


@pytest.fixture
def locks():
    return KeyedLock(timeout=2.0)


@pytest.fixture
def credentials():
    return ProviderCredentials(access_key=None, secret="cf-token")


@pytest.fixture
def registrar(store, dns, address, locks, credentials):
    return DomainRegistrar(
        store, StaticCredentialProvider(credentials), address, dns.factory, locks=locks
    )


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def nginx_installer():
    return FakeInstaller("nginx")


@pytest.fixture
def secret_store(tmp_path):
    return SecretStore(str(tmp_path / "secrets"))


@pytest.fixture
def cert_manager(store, registrar, authority, secret_store, nginx_installer, locks, tmp_path):
    installers = InstallerRegistry(
        {"nginx": nginx_installer, "apache": FakeInstaller("apache")},
        str(tmp_path / "instructions"),
    )
    return CertificateLifecycleManager(
        store,
        registrar,
        authority,
        secret_store,
        installers,
        ChallengeHandlers(webroot=str(tmp_path / "webroot")),
        locks=locks,
    )
