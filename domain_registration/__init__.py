"""
Domain registration module for certroute.
Provides subdomain A-record management against the DNS provider and the
certificate lifecycle (request, issue, install, revoke) for those names.
"""

from .cloudflare_dns import CloudflareDNSProvider
from .cert_manager import CertificateLifecycleManager
from .credentials import CredentialProvider, EncryptedCredentialStore, StaticCredentialProvider
from .registrar import DomainRegistrar
from .store import LifecycleStore

__all__ = [
    "CloudflareDNSProvider",
    "CertificateLifecycleManager",
    "CredentialProvider",
    "EncryptedCredentialStore",
    "StaticCredentialProvider",
    "DomainRegistrar",
    "LifecycleStore",
]
