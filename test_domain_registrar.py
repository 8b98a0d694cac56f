#!/usr/bin/env python3
"""
Tests for the domain registrar against an in-memory DNS provider.
"""

import pytest

from errors import CredentialError, ExternalTransientError, NotFoundError, ValidationError
from domain_registration.credentials import StaticCredentialProvider
from domain_registration.models import ProviderCredentials
from domain_registration.registrar import DomainRegistrar, validate_label


@pytest.mark.parametrize("label", ["api", "API-2", "a", "x" * 63])
def test_valid_labels(label):
    assert validate_label(label) == label


@pytest.mark.parametrize("label", ["", "a.b", "under_score", "space here", "x" * 64, None])
def test_invalid_labels(label):
    with pytest.raises(ValidationError):
        validate_label(label)


def test_create_composes_fqdn_and_upserts(registrar, dns, store):
    record = registrar.create("api", "Z1")

    assert record.fqdn == "api.example.com"
    assert record.target_address == "203.0.113.9"
    assert record.certificate_installed is False
    assert dns.calls == [("upsert", "Z1", "api.example.com", "203.0.113.9", 300)]
    assert store.get_domain(record.id) == record


def test_create_is_idempotent_and_follows_address(registrar, dns, address, store):
    first = registrar.create("api", "Z1")
    address.address = "198.51.100.4"
    second = registrar.create("api", "Z1")

    records = store.list_domains()
    assert len(records) == 1
    assert second.id == first.id
    assert records[0].target_address == "198.51.100.4"
    assert [c[0] for c in dns.calls] == ["upsert", "upsert"]


def test_create_invalid_label_touches_nothing(registrar, dns, store):
    with pytest.raises(ValidationError):
        registrar.create("bad.label", "Z1")
    assert dns.calls == []
    assert store.list_domains() == []


def test_provider_failure_persists_nothing(registrar, dns, store):
    dns.fail_with = ExternalTransientError("timeout")
    with pytest.raises(ExternalTransientError) as exc_info:
        registrar.create("api", "Z1")
    assert exc_info.value.retryable is True
    assert store.list_domains() == []


def test_missing_credentials(store, dns, address, locks):
    registrar = DomainRegistrar(
        store, StaticCredentialProvider(None), address, dns.factory, locks=locks
    )
    with pytest.raises(CredentialError):
        registrar.create("api", "Z1")
    with pytest.raises(CredentialError):
        registrar.list_zones()


def test_explicit_credentials_are_threaded_through(registrar, dns):
    other = ProviderCredentials(access_key="ops@example.com", secret="global-key")
    registrar.create("api", "Z1", credentials=other)
    assert dns.credentials_seen[-1] is other


def test_create_then_delete_round_trip(registrar, dns, store):
    record = registrar.create("api", "Z1")
    registrar.delete(record.id)

    assert store.find_domain_by_fqdn("api.example.com") is None
    upserts = [c for c in dns.calls if c[0] == "upsert"]
    deletes = [c for c in dns.calls if c[0] == "delete"]
    assert len(upserts) == 1 and len(deletes) == 1
    assert upserts[0][1:4] == deletes[0][1:4]


def test_delete_of_absent_record_succeeds(registrar, dns, store):
    record = registrar.create("api", "Z1")
    dns.records.clear()

    registrar.delete(record.id)
    assert store.list_domains() == []


def test_delete_keeps_record_when_provider_fails(registrar, dns, store):
    record = registrar.create("api", "Z1")
    dns.fail_with = ExternalTransientError("connection reset")

    with pytest.raises(ExternalTransientError):
        registrar.delete(record.id)
    assert store.get_domain(record.id).fqdn == "api.example.com"


def test_delete_unknown_record(registrar):
    with pytest.raises(NotFoundError):
        registrar.delete("nope")


def test_list_zones_reads_through(registrar, dns):
    zones = registrar.list_zones()
    assert {z.name for z in zones} == {"example.com", "example.org"}
    dns.zones["Z3"] = "example.net"
    assert len(registrar.list_zones()) == 3


def test_list_records_by_zone(registrar):
    registrar.create("api", "Z1")
    registrar.create("www", "Z2")
    assert [r.fqdn for r in registrar.list_records("Z2")] == ["www.example.org"]
    assert len(registrar.list_records()) == 2


def test_orphan_detection_and_recreate(registrar, dns, address):
    record = registrar.create("api", "Z1")
    assert registrar.is_orphaned(record) is False

    dns.records.clear()
    assert registrar.is_orphaned(record) is True

    address.address = "198.51.100.7"
    repaired = registrar.reconcile(record.id)
    assert repaired.id == record.id
    assert repaired.target_address == "198.51.100.7"
    assert registrar.is_orphaned(repaired) is False


def test_reconcile_drop(registrar, dns, store):
    record = registrar.create("api", "Z1")
    dns.records.clear()

    assert registrar.reconcile(record.id, drop=True) is None
    assert store.list_domains() == []


def test_reconcile_in_sync_is_noop(registrar, dns):
    record = registrar.create("api", "Z1")
    calls = len(dns.calls)
    assert registrar.reconcile(record.id) == record
    assert len(dns.calls) == calls


def mark_installed(store, record_id):
    with store.transaction() as txn:
        record = txn.get_domain(record_id)
        record.certificate_installed = True
        txn.put_domain(record)


def test_create_keeps_installed_flag_set_meanwhile(registrar, dns, address, store):
    record = registrar.create("api", "Z1")
    dns.during_upsert = lambda zone_id, fqdn: mark_installed(store, record.id)
    address.address = "198.51.100.4"

    updated = registrar.create("api", "Z1")

    assert updated.target_address == "198.51.100.4"
    assert updated.certificate_installed is True
    assert store.get_domain(record.id).certificate_installed is True


def test_reconcile_keeps_installed_flag_set_meanwhile(registrar, dns, address, store):
    record = registrar.create("api", "Z1")
    dns.records.clear()
    dns.during_upsert = lambda zone_id, fqdn: mark_installed(store, record.id)
    address.address = "198.51.100.7"

    repaired = registrar.reconcile(record.id)

    stored = store.get_domain(record.id)
    assert repaired.target_address == stored.target_address == "198.51.100.7"
    assert stored.certificate_installed is True


def test_reconcile_of_record_removed_meanwhile(registrar, dns, store):
    record = registrar.create("api", "Z1")
    dns.records.clear()
    dns.during_upsert = lambda zone_id, fqdn: store.delete_domain(record.id)

    with pytest.raises(NotFoundError):
        registrar.reconcile(record.id)
    assert store.list_domains() == []
