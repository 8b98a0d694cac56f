"""
Certificate lifecycle management for registered subdomains.
Drives a certificate from request through issuance and installation, and
keeps at most one installed certificate per (subdomain, port).
"""

import logging
from typing import List, Optional

from errors import (
    ConflictError,
    EngineError,
    ExternalPermanentError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .acme_client import CertificateAuthority, ChallengeHandlers, generate_key_and_csr
from .installers import InstallerRegistry
from .key_store import SecretStore
from .locks import KeyedLock
from .models import (
    ALLOWED_TRANSITIONS,
    CertificateRecord,
    CertificateStatus,
    InstallBundle,
    InstallResult,
    new_id,
    utcnow,
)
from .registrar import DomainRegistrar
from .store import LifecycleStore, StoreTransaction

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "issuance interrupted"


def validate_port(port) -> int:
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ValidationError("Port must be an integer between 1 and 65535", {"port": port})
    return port


class CertificateLifecycleManager:
    """Requests, installs, revokes and deletes certificates for DomainRecords."""

    def __init__(
        self,
        store: LifecycleStore,
        registrar: DomainRegistrar,
        authority: CertificateAuthority,
        secret_store: SecretStore,
        installers: InstallerRegistry,
        challenge_handlers: ChallengeHandlers,
        locks: Optional[KeyedLock] = None,
    ):
        """
        Initialize certificate lifecycle manager.

        Args:
            store: Lifecycle store shared with the registrar
            registrar: Used to check a subdomain is still live before issuing
            authority: Certificate authority collaborator
            secret_store: Where key and certificate material is written
            installers: Server-type to installer mapping
            challenge_handlers: HTTP-01 wiring handed to the authority
            locks: Lease registry shared with the registrar
        """
        self.store = store
        self.registrar = registrar
        self.authority = authority
        self.secret_store = secret_store
        self.installers = installers
        self.challenge_handlers = challenge_handlers
        self.locks = locks or KeyedLock()

    @staticmethod
    def _transition(record: CertificateRecord, target: CertificateStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[record.status]:
            raise ConflictError(
                f"Certificate {record.id} cannot move from {record.status.value} to {target.value}",
                {
                    "certificate_id": record.id,
                    "status": record.status.value,
                    "target": target.value,
                },
            )
        record.status = target
        record.updated_at = utcnow()

    @staticmethod
    def _install_key(domain_record_id: str, port: int) -> str:
        return f"install:{domain_record_id}:{port}"

    def _fail(self, record: CertificateRecord, reason: str) -> None:
        self._transition(record, CertificateStatus.FAILED)
        record.failure_reason = reason
        self.store.put_certificate(record)
        logger.error(f"Certificate {record.id} for {record.fqdn} failed: {reason}")

    def get(self, certificate_id: str) -> CertificateRecord:
        return self.store.get_certificate(certificate_id)

    def list_certificates(
        self, domain_record_id: Optional[str] = None
    ) -> List[CertificateRecord]:
        if domain_record_id:
            # unknown subdomain is a 404, not an empty list
            self.store.get_domain(domain_record_id)
        return self.store.list_certificates(domain_record_id)

    def request_certificate(
        self, domain_record_id: str, install_target_port: int
    ) -> CertificateRecord:
        """
        Request a certificate for a subdomain.

        A ``requested`` record is persisted before the authority is called
        so an interrupted issuance is never lost. The validity window comes
        from the issued certificate.

        Args:
            domain_record_id: Owning DomainRecord
            install_target_port: Port the certificate will be installed on

        Returns:
            The record in ``issued`` state

        Raises:
            ValidationError: Bad port
            NotFoundError: Unknown subdomain
            ConflictError: Subdomain is orphaned at the DNS provider
            ExternalTransientError, ExternalPermanentError: Authority failure;
                the record is kept as ``failed`` and its id is in ``details``
        """
        validate_port(install_target_port)
        domain = self.store.get_domain(domain_record_id)
        if self.registrar.is_orphaned(domain):
            raise ConflictError(
                f"Subdomain {domain.fqdn} has no live DNS record; reconcile it first",
                {"domain_record_id": domain.id, "fqdn": domain.fqdn},
            )

        key_pem, csr_pem = generate_key_and_csr(domain.fqdn)
        now = utcnow()
        record = CertificateRecord(
            id=new_id("cert"),
            domain_record_id=domain.id,
            fqdn=domain.fqdn,
            install_target_port=install_target_port,
            status=CertificateStatus.REQUESTED,
            created_at=now,
            updated_at=now,
        )

        with self.locks.lease(record.id):
            record.key_material_ref = self.secret_store.put(record.id, "privkey.pem", key_pem)
            self.store.put_certificate(record)
            logger.info(f"Certificate {record.id} requested for {domain.fqdn}:{install_target_port}")

            try:
                issued = self.authority.request_certificate(
                    csr_pem, domain.fqdn, self.challenge_handlers
                )
                record.cert_ref = self.secret_store.put(record.id, "cert.pem", issued.cert_pem)
                record.chain_ref = self.secret_store.put(record.id, "chain.pem", issued.chain_pem)
                record.fullchain_ref = self.secret_store.put(
                    record.id, "fullchain.pem", issued.fullchain_pem
                )
            except EngineError as e:
                self._fail(record, e.message)
                e.details.setdefault("certificate_id", record.id)
                raise
            except Exception as e:
                self._fail(record, str(e) or type(e).__name__)
                raise ExternalPermanentError(
                    f"Certificate authority returned an unusable response: {e}",
                    {"certificate_id": record.id, "fqdn": domain.fqdn},
                ) from e

            self._transition(record, CertificateStatus.ISSUED)
            record.issued_at = record.updated_at
            record.expires_at = issued.valid_to
            self.store.put_certificate(record)

        logger.info(
            f"Certificate {record.id} issued for {domain.fqdn}, expires {record.expires_at.isoformat()}"
        )
        return record

    def install_certificate(self, certificate_id: str, server_type: str) -> InstallResult:
        """
        Install an issued certificate on the detected or requested server.

        On success the new record becomes ``installed``, any prior
        installed record for the same subdomain and port becomes
        ``revoked`` and the subdomain is flagged as having a certificate,
        all in one store write. On failure nothing changes.

        Raises:
            ValidationError: Empty server type
            NotFoundError: Unknown certificate
            ConflictError: Certificate is not ``issued``
            ExternalTransientError, ExternalPermanentError: Installer failure
        """
        installer = self.installers.resolve(server_type)

        with self.locks.lease(certificate_id):
            record = self.store.get_certificate(certificate_id)
            if record.status != CertificateStatus.ISSUED:
                raise ConflictError(
                    f"Certificate {certificate_id} is {record.status.value}; only issued certificates can be installed",
                    {"certificate_id": certificate_id, "status": record.status.value},
                )
            port = record.install_target_port

            with self.locks.lease(self._install_key(record.domain_record_id, port)):
                bundle = InstallBundle(
                    certificate_id=record.id,
                    fqdn=record.fqdn,
                    port=port,
                    cert_path=self.secret_store.path(record.cert_ref),
                    key_path=self.secret_store.path(record.key_material_ref),
                    chain_path=self.secret_store.path(record.chain_ref),
                    fullchain_path=self.secret_store.path(record.fullchain_ref),
                )
                result = installer.install(bundle)
                if not result.success:
                    logger.error(f"Install of {certificate_id} on {installer.server_type} failed: {result.detail}")
                    raise ExternalPermanentError(
                        result.detail,
                        {
                            "certificate_id": certificate_id,
                            "server_type": result.server_type,
                            "steps": result.steps,
                        },
                    )

                superseded = self._commit_install(record, result.server_type)

        if superseded:
            result.superseded_certificate_id = superseded[0]
        logger.info(f"Certificate {certificate_id} installed for {record.fqdn}:{port}")
        return result

    def _commit_install(self, record: CertificateRecord, server_type: str) -> List[str]:
        """
        Mark ``record`` installed, revoke whatever is installed on the same
        subdomain and port, and flag the subdomain. Everything other than
        ``record`` is read from the document being written, so changes made
        while the installer ran are kept.
        """
        with self.store.transaction() as txn:
            self._transition(record, CertificateStatus.INSTALLED)
            record.installed_at = record.updated_at
            record.installed_server_type = server_type
            txn.put_certificate(record)

            superseded = []
            for old in txn.list_certificates(record.domain_record_id, CertificateStatus.INSTALLED):
                if old.id == record.id or old.install_target_port != record.install_target_port:
                    continue
                self._transition(old, CertificateStatus.REVOKED)
                old.revoked_at = old.updated_at
                txn.put_certificate(old)
                superseded.append(old.id)
                logger.info(f"Certificate {old.id} superseded by {record.id}")

            domain = txn.get_domain(record.domain_record_id)
            if domain is None:
                logger.warning(
                    f"Subdomain {record.domain_record_id} was deleted while {record.id} was being installed"
                )
            elif not domain.certificate_installed:
                domain.certificate_installed = True
                domain.updated_at = record.updated_at
                txn.put_domain(domain)
        return superseded

    @staticmethod
    def _certificate_in(txn: StoreTransaction, certificate_id: str) -> CertificateRecord:
        record = txn.get_certificate(certificate_id)
        if record is None:
            raise NotFoundError(
                f"Certificate {certificate_id} not found", {"certificate_id": certificate_id}
            )
        return record

    @staticmethod
    def _clear_installed_flag(txn: StoreTransaction, domain_record_id: str) -> None:
        """Reset ``certificate_installed`` once the subdomain has no installed certificate left."""
        if txn.list_certificates(domain_record_id, CertificateStatus.INSTALLED):
            return
        domain = txn.get_domain(domain_record_id)
        if domain is None or not domain.certificate_installed:
            return
        domain.certificate_installed = False
        domain.updated_at = utcnow()
        txn.put_domain(domain)

    def revoke(self, certificate_id: str) -> CertificateRecord:
        """Operator revocation of an issued or installed certificate."""
        with self.locks.lease(certificate_id):
            with self.store.transaction() as txn:
                record = self._certificate_in(txn, certificate_id)
                was_installed = record.status == CertificateStatus.INSTALLED
                self._transition(record, CertificateStatus.REVOKED)
                record.revoked_at = record.updated_at
                txn.put_certificate(record)
                if was_installed:
                    self._clear_installed_flag(txn, record.domain_record_id)

        logger.info(f"Certificate {certificate_id} revoked")
        return record

    def delete(self, certificate_id: str, force: bool = False) -> None:
        """
        Delete a certificate record, then its key material.

        Key material that cannot be removed once the record is gone is
        logged and left on disk.

        Raises:
            NotFoundError: Unknown certificate
            ConflictError: Certificate is installed and ``force`` is not set
        """
        with self.locks.lease(certificate_id):
            with self.store.transaction() as txn:
                record = self._certificate_in(txn, certificate_id)
                installed = record.status == CertificateStatus.INSTALLED
                if installed and not force:
                    raise ConflictError(
                        f"Certificate {certificate_id} is installed; a web server still references its key",
                        {"certificate_id": certificate_id, "status": record.status.value},
                    )
                txn.remove_certificate(certificate_id)
                if installed:
                    logger.warning(f"Force-deleting installed certificate {certificate_id}")
                    self._clear_installed_flag(txn, record.domain_record_id)

            try:
                self.secret_store.delete_owner(record.id)
            except StorageError as e:
                logger.warning(f"Certificate {certificate_id} deleted but its key material remains: {e.message}")

        logger.info(f"Certificate {certificate_id} deleted")

    def recover_interrupted(self) -> List[str]:
        """
        Fail records left in ``requested`` by a process that stopped
        mid-issuance. Meant to run once at startup.

        Returns:
            Ids of the records moved to ``failed``
        """
        with self.store.transaction() as txn:
            stale = txn.list_certificates(status=CertificateStatus.REQUESTED)
            for record in stale:
                self._transition(record, CertificateStatus.FAILED)
                record.failure_reason = INTERRUPTED_REASON
                txn.put_certificate(record)
                logger.warning(f"Certificate {record.id} for {record.fqdn} marked failed: {INTERRUPTED_REASON}")
        return [r.id for r in stale]
