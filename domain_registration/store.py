"""
Durable lifecycle store for domain and certificate records.
Keeps both record sets in one JSON document that is rewritten atomically.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from threading import RLock
from typing import Dict, Iterable, Iterator, List, Optional

from errors import ConflictError, NotFoundError, StorageError
from .models import CertificateRecord, CertificateStatus, DomainRecord

logger = logging.getLogger(__name__)


class StoreTransaction:
    """
    Working copy of the lifecycle document inside ``LifecycleStore.transaction``.

    Reads see the document as loaded under the store lock, so changes made
    here are based on current state rather than on records read earlier.
    """

    def __init__(self, data: Dict[str, Dict[str, dict]]):
        self.data = data

    def get_domain(self, record_id: str) -> Optional[DomainRecord]:
        entry = self.data["domains"].get(record_id)
        return DomainRecord.from_dict(entry) if entry is not None else None

    def find_domain_by_fqdn(self, fqdn: str) -> Optional[DomainRecord]:
        fqdn = fqdn.lower()
        for entry in self.data["domains"].values():
            if entry["fqdn"].lower() == fqdn:
                return DomainRecord.from_dict(entry)
        return None

    def put_domain(self, record: DomainRecord) -> None:
        fqdn = record.fqdn.lower()
        for other_id, other in self.data["domains"].items():
            if other_id != record.id and other["fqdn"].lower() == fqdn:
                raise ConflictError(
                    f"A domain record for {record.fqdn} already exists",
                    {"fqdn": record.fqdn, "domain_record_id": other_id},
                )
        self.data["domains"][record.id] = record.to_dict()

    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        entry = self.data["certificates"].get(certificate_id)
        return CertificateRecord.from_dict(entry) if entry is not None else None

    def list_certificates(
        self,
        domain_record_id: Optional[str] = None,
        status: Optional[CertificateStatus] = None,
    ) -> List[CertificateRecord]:
        records = [CertificateRecord.from_dict(e) for e in self.data["certificates"].values()]
        if domain_record_id:
            records = [r for r in records if r.domain_record_id == domain_record_id]
        if status:
            records = [r for r in records if r.status == status]
        return sorted(records, key=lambda r: r.created_at)

    def put_certificate(self, record: CertificateRecord) -> None:
        self.data["certificates"][record.id] = record.to_dict()

    def remove_certificate(self, certificate_id: str) -> None:
        self.data["certificates"].pop(certificate_id, None)



class LifecycleStore:
    """
    JSON-file backed store.

    Every mutation reads the current document, applies the change and
    replaces the file with ``os.replace`` so a reader never sees a partially
    written document. A process-wide lock serializes access.
    """

    def __init__(self, path: str):
        """
        Initialize the store.

        Args:
            path: Location of the JSON document (created on first write)
        """
        self.path = path
        self._lock = RLock()

    def _load(self) -> Dict[str, Dict[str, dict]]:
        if not os.path.exists(self.path):
            return {"domains": {}, "certificates": {}}
        try:
            with open(self.path, "r") as f:
                raw = f.read()
        except OSError as e:
            raise StorageError(f"Could not read lifecycle store: {e}", {"path": self.path})
        if not raw.strip():
            return {"domains": {}, "certificates": {}}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(
                f"Lifecycle store is not valid JSON: {e}", {"path": self.path}
            )
        data.setdefault("domains", {})
        data.setdefault("certificates", {})
        return data

    def _save(self, data: Dict[str, Dict[str, dict]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".lifecycle-")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Could not write lifecycle store: {e}", {"path": self.path})

    # Domain records

    def get_domain(self, record_id: str) -> DomainRecord:
        with self._lock:
            entry = self._load()["domains"].get(record_id)
        if entry is None:
            raise NotFoundError(
                f"Domain record {record_id} not found", {"domain_record_id": record_id}
            )
        return DomainRecord.from_dict(entry)

    def find_domain_by_fqdn(self, fqdn: str) -> Optional[DomainRecord]:
        fqdn = fqdn.lower()
        with self._lock:
            for entry in self._load()["domains"].values():
                if entry["fqdn"].lower() == fqdn:
                    return DomainRecord.from_dict(entry)
        return None

    def list_domains(self, zone_id: Optional[str] = None) -> List[DomainRecord]:
        with self._lock:
            entries = list(self._load()["domains"].values())
        records = [DomainRecord.from_dict(e) for e in entries]
        if zone_id:
            records = [r for r in records if r.zone_id == zone_id]
        return sorted(records, key=lambda r: r.created_at)

    def put_domain(self, record: DomainRecord) -> None:
        self.commit(domains=[record])

    def delete_domain(self, record_id: str) -> None:
        with self._lock:
            data = self._load()
            if data["domains"].pop(record_id, None) is None:
                raise NotFoundError(
                    f"Domain record {record_id} not found",
                    {"domain_record_id": record_id},
                )
            self._save(data)
        logger.debug(f"Removed domain record {record_id}")

    # Certificate records

    def get_certificate(self, certificate_id: str) -> CertificateRecord:
        with self._lock:
            entry = self._load()["certificates"].get(certificate_id)
        if entry is None:
            raise NotFoundError(
                f"Certificate {certificate_id} not found",
                {"certificate_id": certificate_id},
            )
        return CertificateRecord.from_dict(entry)

    def list_certificates(
        self,
        domain_record_id: Optional[str] = None,
        status: Optional[CertificateStatus] = None,
    ) -> List[CertificateRecord]:
        with self._lock:
            entries = list(self._load()["certificates"].values())
        records = [CertificateRecord.from_dict(e) for e in entries]
        if domain_record_id:
            records = [r for r in records if r.domain_record_id == domain_record_id]
        if status:
            records = [r for r in records if r.status == status]
        return sorted(records, key=lambda r: r.created_at)

    def put_certificate(self, record: CertificateRecord) -> None:
        self.commit(certificates=[record])

    def delete_certificate(self, certificate_id: str) -> None:
        with self._lock:
            data = self._load()
            if data["certificates"].pop(certificate_id, None) is None:
                raise NotFoundError(
                    f"Certificate {certificate_id} not found",
                    {"certificate_id": certificate_id},
                )
            self._save(data)
        logger.debug(f"Removed certificate record {certificate_id}")

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """
        Read-modify-write of the whole document under the store lock.

        The document is saved once when the block exits cleanly. An
        exception inside the block discards every change.

        Raises:
            StorageError: If the document cannot be read or written
        """
        with self._lock:
            txn = StoreTransaction(self._load())
            yield txn
            self._save(txn.data)

    def commit(
        self,
        domains: Iterable[DomainRecord] = (),
        certificates: Iterable[CertificateRecord] = (),
        remove_certificates: Iterable[str] = (),
    ) -> None:
        """
        Write several records in a single document replacement.

        Args:
            domains: Domain records to insert or replace
            certificates: Certificate records to insert or replace
            remove_certificates: Certificate ids to drop

        Raises:
            ConflictError: If a domain record would duplicate a live fqdn
            StorageError: If the document cannot be read or written
        """
        with self.transaction() as txn:
            for record in domains:
                txn.put_domain(record)
            for record in certificates:
                txn.put_certificate(record)
            for certificate_id in remove_certificates:
                txn.remove_certificate(certificate_id)
