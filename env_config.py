"""
Environment configuration for certroute.
Handles all environment variable parsing and validation for the engine and
its HTTP surface.
"""

import os
import logging
from typing import List, Optional
from dataclasses import dataclass

from domain_registration.acme_client import LETSENCRYPT_STAGING
from domain_registration.cloudflare_dns import DEFAULT_BASE_URL
from domain_registration.public_address import DEFAULT_DISCOVERY_URL
from host_probe.scanner import DEFAULT_PORTS

logger = logging.getLogger(__name__)

LOG_LEVELS = ["critical", "error", "warning", "info", "debug", "trace"]


@dataclass
class EngineConfig:
    """Main engine configuration loaded from environment variables."""

    # Server settings
    host: str
    port: int
    log_level: str

    # Storage
    data_dir: str
    credentials_key: Optional[str]

    # DNS provider
    dns_record_ttl: int
    dns_api_base_url: str
    dns_request_timeout: int
    public_ip_url: str
    public_ip_timeout: int

    # Certificate authority
    acme_email: Optional[str]
    acme_server: str
    acme_webroot: Optional[str]
    acme_standalone_port: Optional[int]
    ca_timeout: int

    # Installers
    nginx_conf_dir: str
    apache_conf_dir: str
    install_instructions_dir: str
    install_proxy_upstream: Optional[str]
    installer_command_timeout: int

    # Host probe
    probe_host: str
    probe_ports: List[int]
    probe_connect_timeout: float
    probe_liveness_timeout: float
    probe_version_timeout: float
    probe_workers: int

    # Concurrency
    lease_timeout: float

    # Admin settings
    admin_token: Optional[str]

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        data_dir = os.getenv("CERTROUTE_DATA_DIR", "./data")
        standalone_port = os.getenv("ACME_STANDALONE_PORT")
        return cls(
            # Server settings
            host=os.getenv("CERTROUTE_HOST", "0.0.0.0"),
            port=int(os.getenv("CERTROUTE_PORT", "5000")),
            log_level=os.getenv("CERTROUTE_LOG_LEVEL", "info"),
            # Storage
            data_dir=data_dir,
            credentials_key=os.getenv("CERTROUTE_CREDENTIALS_KEY"),
            # DNS provider
            dns_record_ttl=int(os.getenv("DNS_RECORD_TTL", "300")),
            dns_api_base_url=os.getenv("DNS_API_BASE_URL", DEFAULT_BASE_URL),
            dns_request_timeout=int(os.getenv("DNS_REQUEST_TIMEOUT", "15")),
            public_ip_url=os.getenv("PUBLIC_IP_URL", DEFAULT_DISCOVERY_URL),
            public_ip_timeout=int(os.getenv("PUBLIC_IP_TIMEOUT", "10")),
            # Certificate authority
            acme_email=os.getenv("ACME_EMAIL"),
            acme_server=os.getenv("ACME_SERVER", LETSENCRYPT_STAGING),
            acme_webroot=os.getenv("ACME_WEBROOT", "/var/www/html") or None,
            acme_standalone_port=int(standalone_port) if standalone_port else None,
            ca_timeout=int(os.getenv("CA_TIMEOUT", "600")),
            # Installers
            nginx_conf_dir=os.getenv("NGINX_CONF_DIR", "/etc/nginx/conf.d"),
            apache_conf_dir=os.getenv("APACHE_CONF_DIR", "/etc/apache2/sites-enabled"),
            install_instructions_dir=os.getenv(
                "INSTALL_INSTRUCTIONS_DIR", os.path.join(data_dir, "instructions")
            ),
            install_proxy_upstream=os.getenv("INSTALL_PROXY_UPSTREAM"),
            installer_command_timeout=int(os.getenv("INSTALLER_COMMAND_TIMEOUT", "60")),
            # Host probe
            probe_host=os.getenv("PROBE_HOST", "127.0.0.1"),
            probe_ports=cls._parse_ports(os.getenv("PROBE_PORTS", "")),
            probe_connect_timeout=float(os.getenv("PROBE_CONNECT_TIMEOUT", "1.0")),
            probe_liveness_timeout=float(os.getenv("PROBE_LIVENESS_TIMEOUT", "3.0")),
            probe_version_timeout=float(os.getenv("PROBE_VERSION_TIMEOUT", "5.0")),
            probe_workers=int(os.getenv("PROBE_WORKERS", "4")),
            # Concurrency
            lease_timeout=float(os.getenv("LEASE_TIMEOUT", "30")),
            # Admin settings
            admin_token=os.getenv("ADMIN_TOKEN"),
        )

    @staticmethod
    def _parse_ports(ports_str: str) -> List[int]:
        """Parse comma-separated ports from environment variable."""
        if not ports_str:
            return list(DEFAULT_PORTS)
        return [int(port.strip()) for port in ports_str.split(",") if port.strip()]

    @property
    def store_path(self) -> str:
        return os.path.join(self.data_dir, "lifecycle.json")

    @property
    def credentials_path(self) -> str:
        return os.path.join(self.data_dir, "credentials.json")

    @property
    def secrets_dir(self) -> str:
        return os.path.join(self.data_dir, "secrets")

    @property
    def certbot_dir(self) -> str:
        return os.path.join(self.data_dir, "letsencrypt")

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        # Validate server settings
        if self.port < 1 or self.port > 65535:
            errors.append("CERTROUTE_PORT must be between 1 and 65535")

        if self.log_level not in LOG_LEVELS:
            errors.append(
                "CERTROUTE_LOG_LEVEL must be one of: critical, error, warning, info, debug, trace"
            )

        if self.dns_record_ttl < 60:
            errors.append("DNS_RECORD_TTL must be at least 60 seconds")

        if not self.dns_api_base_url.startswith(("http://", "https://")):
            errors.append("DNS_API_BASE_URL must start with http:// or https://")

        if not self.public_ip_url.startswith(("http://", "https://")):
            errors.append("PUBLIC_IP_URL must start with http:// or https://")

        # Validate timeouts
        for name, value in [
            ("DNS_REQUEST_TIMEOUT", self.dns_request_timeout),
            ("PUBLIC_IP_TIMEOUT", self.public_ip_timeout),
            ("CA_TIMEOUT", self.ca_timeout),
            ("INSTALLER_COMMAND_TIMEOUT", self.installer_command_timeout),
            ("PROBE_CONNECT_TIMEOUT", self.probe_connect_timeout),
            ("PROBE_LIVENESS_TIMEOUT", self.probe_liveness_timeout),
            ("PROBE_VERSION_TIMEOUT", self.probe_version_timeout),
            ("LEASE_TIMEOUT", self.lease_timeout),
        ]:
            if value <= 0:
                errors.append(f"{name} must be greater than 0")

        if self.acme_standalone_port is not None and not 1 <= self.acme_standalone_port <= 65535:
            errors.append("ACME_STANDALONE_PORT must be between 1 and 65535")

        for port in self.probe_ports:
            if not 1 <= port <= 65535:
                errors.append(f"PROBE_PORTS entry out of range: {port}")

        if self.probe_workers < 1:
            errors.append("PROBE_WORKERS must be at least 1")

        return errors

    def log_configuration(self):
        """Log the current configuration (without sensitive data)."""
        logger.info("certroute configuration loaded from environment variables:")
        logger.info(f"  Host: {self.host}")
        logger.info(f"  Port: {self.port}")
        logger.info(f"  Log Level: {self.log_level}")
        logger.info(f"  Data Dir: {self.data_dir}")
        logger.info(f"  DNS Record TTL: {self.dns_record_ttl}s")
        logger.info(f"  ACME Server: {self.acme_server}")
        if self.acme_email:
            logger.info(f"  ACME Email: {self.acme_email}")
        else:
            logger.warning("  ACME Email: not set, certificate requests will fail")
        logger.info(f"  Probe Ports: {self.probe_ports}")
        if self.credentials_key:
            logger.info("  Credentials Key: Configured")
        if self.admin_token:
            logger.info("  Admin Token: Configured")


def load_config_from_env() -> EngineConfig:
    """Load and validate engine configuration from environment variables."""
    config = EngineConfig.from_env()

    # Validate configuration
    errors = config.validate()
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    # Log configuration
    config.log_configuration()

    return config
