"""
Records and value objects for subdomain and certificate lifecycles.
"""

import enum
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CertificateStatus(str, enum.Enum):
    REQUESTED = "requested"
    ISSUED = "issued"
    INSTALLED = "installed"
    FAILED = "failed"
    REVOKED = "revoked"


# Forward-only. Nothing leaves FAILED or REVOKED.
ALLOWED_TRANSITIONS: Dict[CertificateStatus, frozenset] = {
    CertificateStatus.REQUESTED: frozenset(
        {CertificateStatus.ISSUED, CertificateStatus.FAILED}
    ),
    CertificateStatus.ISSUED: frozenset(
        {
            CertificateStatus.INSTALLED,
            CertificateStatus.FAILED,
            CertificateStatus.REVOKED,
        }
    ),
    CertificateStatus.INSTALLED: frozenset({CertificateStatus.REVOKED}),
    CertificateStatus.FAILED: frozenset(),
    CertificateStatus.REVOKED: frozenset(),
}


@dataclass
class ProviderCredentials:
    """DNS provider credentials handed to a provider client for one call."""

    access_key: Optional[str]
    secret: str
    region: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"ProviderCredentials(access_key={self.access_key!r}, "
            f"secret='***', region={self.region!r})"
        )


@dataclass
class ZoneSummary:
    id: str
    name: str
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DomainRecord:
    """A subdomain A-record this engine created and still owns."""

    id: str
    label: str
    zone_id: str
    fqdn: str
    target_address: str
    created_at: datetime
    updated_at: datetime
    certificate_installed: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainRecord":
        return cls(
            id=data["id"],
            label=data["label"],
            zone_id=data["zone_id"],
            fqdn=data["fqdn"],
            target_address=data["target_address"],
            created_at=_parse(data["created_at"]),
            updated_at=_parse(data["updated_at"]),
            certificate_installed=bool(data.get("certificate_installed", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "zone_id": self.zone_id,
            "fqdn": self.fqdn,
            "target_address": self.target_address,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "certificate_installed": self.certificate_installed,
        }


@dataclass
class CertificateRecord:
    """
    A certificate for one DomainRecord and one install target port.

    The ``*_ref`` fields are secret-store references; PEM material never
    lives on the record.
    """

    id: str
    domain_record_id: str
    fqdn: str
    install_target_port: int
    status: CertificateStatus
    created_at: datetime
    updated_at: datetime
    key_material_ref: Optional[str] = None
    cert_ref: Optional[str] = None
    chain_ref: Optional[str] = None
    fullchain_ref: Optional[str] = None
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    installed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    installed_server_type: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRecord":
        return cls(
            id=data["id"],
            domain_record_id=data["domain_record_id"],
            fqdn=data["fqdn"],
            install_target_port=int(data["install_target_port"]),
            status=CertificateStatus(data["status"]),
            created_at=_parse(data["created_at"]),
            updated_at=_parse(data["updated_at"]),
            key_material_ref=data.get("key_material_ref"),
            cert_ref=data.get("cert_ref"),
            chain_ref=data.get("chain_ref"),
            fullchain_ref=data.get("fullchain_ref"),
            expires_at=_parse(data.get("expires_at")),
            issued_at=_parse(data.get("issued_at")),
            installed_at=_parse(data.get("installed_at")),
            revoked_at=_parse(data.get("revoked_at")),
            installed_server_type=data.get("installed_server_type"),
            failure_reason=data.get("failure_reason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "domain_record_id": self.domain_record_id,
            "fqdn": self.fqdn,
            "install_target_port": self.install_target_port,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "key_material_ref": self.key_material_ref,
            "cert_ref": self.cert_ref,
            "chain_ref": self.chain_ref,
            "fullchain_ref": self.fullchain_ref,
            "expires_at": _iso(self.expires_at),
            "issued_at": _iso(self.issued_at),
            "installed_at": _iso(self.installed_at),
            "revoked_at": _iso(self.revoked_at),
            "installed_server_type": self.installed_server_type,
            "failure_reason": self.failure_reason,
        }


@dataclass
class IssuedCertificate:
    """What a certificate authority hands back for an accepted CSR."""

    cert_pem: bytes
    chain_pem: bytes
    fullchain_pem: bytes
    valid_from: datetime
    valid_to: datetime


@dataclass
class InstallBundle:
    """Paths to the material an installer wires into a web server."""

    certificate_id: str
    fqdn: str
    port: int
    cert_path: str
    key_path: str
    chain_path: str
    fullchain_path: str


@dataclass
class InstallResult:
    success: bool
    detail: str
    server_type: Optional[str] = None
    steps: List[str] = field(default_factory=list)
    superseded_certificate_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
