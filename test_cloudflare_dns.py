#!/usr/bin/env python3
"""
Tests for the Cloudflare DNS provider's request handling and error mapping.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from errors import (
    CredentialError,
    DNSRecordAbsentError,
    ExternalPermanentError,
    ExternalTransientError,
)
from domain_registration.cloudflare_dns import CloudflareDNSProvider
from domain_registration.models import ProviderCredentials


def response(status_code=200, body=None):
    mock = Mock()
    mock.status_code = status_code
    mock.json.return_value = body if body is not None else {"success": True, "result": []}
    return mock


def ok(result):
    return response(200, {"success": True, "errors": [], "result": result})


@pytest.fixture
def provider():
    return CloudflareDNSProvider(ProviderCredentials(access_key=None, secret="token"))


def test_token_and_global_key_headers():
    token = CloudflareDNSProvider(ProviderCredentials(access_key=None, secret="t"))
    assert token.headers["Authorization"] == "Bearer t"

    global_key = CloudflareDNSProvider(
        ProviderCredentials(access_key="ops@example.com", secret="k")
    )
    assert global_key.headers["X-Auth-Email"] == "ops@example.com"
    assert global_key.headers["X-Auth-Key"] == "k"
    assert "Authorization" not in global_key.headers


def test_missing_secret_is_credential_error():
    with pytest.raises(CredentialError):
        CloudflareDNSProvider(ProviderCredentials(access_key=None, secret=""))


@patch("domain_registration.cloudflare_dns.requests.request")
def test_zone_apex_strips_trailing_dot(mock_request, provider):
    mock_request.return_value = ok({"id": "Z1", "name": "example.com."})
    assert provider.get_zone_apex("Z1") == "example.com"
    assert mock_request.call_args.kwargs["timeout"] == provider.timeout


@patch("domain_registration.cloudflare_dns.requests.request")
def test_list_zones_follows_pages(mock_request, provider):
    mock_request.side_effect = [
        response(200, {
            "success": True,
            "result": [{"id": "Z1", "name": "example.com", "status": "active"}],
            "result_info": {"page": 1, "total_pages": 2},
        }),
        response(200, {
            "success": True,
            "result": [{"id": "Z2", "name": "example.org", "status": "active"}],
            "result_info": {"page": 2, "total_pages": 2},
        }),
    ]
    zones = provider.list_zones()
    assert [z.id for z in zones] == ["Z1", "Z2"]
    assert mock_request.call_count == 2


@patch("domain_registration.cloudflare_dns.requests.request")
def test_upsert_creates_when_absent(mock_request, provider):
    mock_request.side_effect = [ok([]), ok({"id": "rec1"})]

    assert provider.upsert_a("Z1", "api.example.com", "203.0.113.9", 300) == "rec1"
    method, url = mock_request.call_args.args
    assert method == "POST"
    assert url.endswith("zones/Z1/dns_records")
    assert mock_request.call_args.kwargs["json"]["ttl"] == 300


@patch("domain_registration.cloudflare_dns.requests.request")
def test_upsert_overwrites_existing(mock_request, provider):
    mock_request.side_effect = [
        ok([{"id": "rec1", "content": "198.51.100.4"}]),
        ok({"id": "rec1"}),
    ]

    assert provider.upsert_a("Z1", "api.example.com", "203.0.113.9", 300) == "rec1"
    method, url = mock_request.call_args.args
    assert method == "PUT"
    assert url.endswith("zones/Z1/dns_records/rec1")
    assert mock_request.call_args.kwargs["json"]["content"] == "203.0.113.9"


@patch("domain_registration.cloudflare_dns.requests.request")
def test_delete_matches_on_value(mock_request, provider):
    mock_request.side_effect = [
        ok([
            {"id": "rec1", "content": "198.51.100.4"},
            {"id": "rec2", "content": "203.0.113.9"},
        ]),
        ok({"id": "rec2"}),
    ]

    provider.delete_a("Z1", "api.example.com", "203.0.113.9", 300)
    method, url = mock_request.call_args.args
    assert method == "DELETE"
    assert url.endswith("dns_records/rec2")


@patch("domain_registration.cloudflare_dns.requests.request")
def test_delete_without_matching_value_is_absent(mock_request, provider):
    mock_request.return_value = ok([{"id": "rec1", "content": "198.51.100.4"}])
    with pytest.raises(DNSRecordAbsentError):
        provider.delete_a("Z1", "api.example.com", "203.0.113.9", 300)


@patch("domain_registration.cloudflare_dns.requests.request")
def test_delete_race_maps_81044_to_absent(mock_request, provider):
    mock_request.side_effect = [
        ok([{"id": "rec1", "content": "203.0.113.9"}]),
        response(404, {
            "success": False,
            "errors": [{"code": 81044, "message": "Record does not exist."}],
        }),
    ]
    with pytest.raises(DNSRecordAbsentError):
        provider.delete_a("Z1", "api.example.com", "203.0.113.9", 300)


@pytest.mark.parametrize(
    "status_code,body,expected",
    [
        (401, {"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]}, CredentialError),
        (400, {"success": False, "errors": [{"code": 6003, "message": "Invalid request headers"}]}, CredentialError),
        (429, {"success": False, "errors": []}, ExternalTransientError),
        (502, {}, ExternalTransientError),
        (400, {"success": False, "errors": [{"code": 9005, "message": "Content for A record is invalid"}]}, ExternalPermanentError),
    ],
)
@patch("domain_registration.cloudflare_dns.requests.request")
def test_error_classification(mock_request, provider, status_code, body, expected):
    mock_request.return_value = response(status_code, body)
    with pytest.raises(expected) as exc_info:
        provider.get_zone_apex("Z1")
    assert exc_info.value.details["status_code"] == status_code


@patch("domain_registration.cloudflare_dns.requests.request")
def test_network_failures_are_transient(mock_request, provider):
    mock_request.side_effect = requests.exceptions.Timeout("read timed out")
    with pytest.raises(ExternalTransientError):
        provider.list_zones()

    mock_request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(ExternalTransientError):
        provider.list_zones()


@patch("domain_registration.cloudflare_dns.requests.request")
def test_validate_credentials_endpoint(mock_request):
    mock_request.return_value = ok({"status": "active"})
    token = CloudflareDNSProvider(ProviderCredentials(access_key=None, secret="t"))
    assert token.validate_credentials() is True
    assert mock_request.call_args.args[1].endswith("user/tokens/verify")

    global_key = CloudflareDNSProvider(ProviderCredentials(access_key="a@b.c", secret="k"))
    global_key.validate_credentials()
    assert mock_request.call_args.args[1].endswith("/user")
