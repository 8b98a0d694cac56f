"""
Certificate authority collaborators.
Key/CSR generation plus a certbot-driven ACME authority.
"""

import abc
import logging
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from errors import ExternalPermanentError, ExternalTransientError
from .models import IssuedCertificate

logger = logging.getLogger(__name__)

LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

# certbot output fragments that point at a temporary condition
_TRANSIENT_MARKERS = (
    "timed out",
    "connection refused",
    "connection reset",
    "temporary failure",
    "ratelimited",
    "too many requests",
    "service unavailable",
)


def generate_key_and_csr(fqdn: str, key_size: int = 2048) -> Tuple[bytes, bytes]:
    """
    Generate an RSA key and a CSR scoped to one name.

    The name is both the subject common name and the only subject
    alternative name.

    Args:
        fqdn: Fully qualified domain name
        key_size: RSA modulus size

    Returns:
        (private_key_pem, csr_pem)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, fqdn)]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(fqdn)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key_pem, csr.public_bytes(serialization.Encoding.PEM)


def load_validity(cert_pem: bytes):
    """Return the (not_before, not_after) window of a PEM certificate, UTC-aware."""
    cert = x509.load_pem_x509_certificate(cert_pem)
    return cert.not_valid_before_utc, cert.not_valid_after_utc


@dataclass
class ChallengeHandlers:
    """
    HTTP-01 challenge wiring handed to the authority.

    Either ``webroot`` (an existing web server serves
    ``/.well-known/acme-challenge`` from it) or ``standalone_port`` (the
    authority binds that port itself).
    """

    webroot: Optional[str] = None
    standalone_port: Optional[int] = None

    def certbot_args(self) -> List[str]:
        if self.webroot:
            return ["--webroot", "-w", self.webroot, "--preferred-challenges", "http-01"]
        if self.standalone_port:
            return [
                "--standalone",
                "--http-01-port",
                str(self.standalone_port),
                "--preferred-challenges",
                "http-01",
            ]
        raise ExternalPermanentError(
            "No HTTP-01 challenge handler configured (set ACME_WEBROOT or ACME_STANDALONE_PORT)"
        )


class CertificateAuthority(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def request_certificate(
        self, csr_pem: bytes, fqdn: str, challenge_handlers: ChallengeHandlers
    ) -> IssuedCertificate:
        """
        Submit a CSR and wait for the signed certificate.

        Raises:
            ExternalTransientError: Network trouble or timeout
            ExternalPermanentError: The CA refused (e.g. challenge failed)
        """
        pass


class CertbotAuthority(CertificateAuthority):
    """Runs ``certbot certonly --csr`` against an ACME directory."""

    def __init__(
        self,
        email: str,
        server: str = LETSENCRYPT_STAGING,
        config_dir: str = "/etc/letsencrypt",
        timeout: int = 600,
    ):
        """
        Initialize the certbot authority.

        Args:
            email: ACME account contact
            server: ACME directory URL
            config_dir: certbot config/work/logs root
            timeout: Upper bound for one issuance, in seconds
        """
        self.email = email
        self.server = server
        self.config_dir = config_dir
        self.timeout = timeout

    def _build_command(
        self, workdir: str, fqdn: str, challenge_handlers: ChallengeHandlers
    ) -> List[str]:
        if not self.email:
            raise ExternalPermanentError("ACME account email is not configured (set ACME_EMAIL)")
        return [
            sys.executable,
            "-m",
            "certbot",
            "certonly",
            "--non-interactive",
            "--agree-tos",
            "--email",
            self.email,
            "--server",
            self.server,
            "--config-dir",
            self.config_dir,
            "--work-dir",
            os.path.join(self.config_dir, "work"),
            "--logs-dir",
            os.path.join(self.config_dir, "logs"),
            "--csr",
            os.path.join(workdir, "request.csr"),
            "--cert-path",
            os.path.join(workdir, "cert.pem"),
            "--chain-path",
            os.path.join(workdir, "chain.pem"),
            "--fullchain-path",
            os.path.join(workdir, "fullchain.pem"),
            "-d",
            fqdn,
            *challenge_handlers.certbot_args(),
        ]

    def request_certificate(
        self, csr_pem: bytes, fqdn: str, challenge_handlers: ChallengeHandlers
    ) -> IssuedCertificate:
        with tempfile.TemporaryDirectory(prefix="certroute-") as workdir:
            with open(os.path.join(workdir, "request.csr"), "wb") as f:
                f.write(csr_pem)

            cmd = self._build_command(workdir, fqdn, challenge_handlers)
            logger.info(f"Running certbot command: {' '.join(cmd[:6])}... for {fqdn}")
            try:
                result = subprocess.run(
                    cmd, capture_output=True, text=True, timeout=self.timeout
                )
            except subprocess.TimeoutExpired:
                logger.error(f"Certificate request timed out for {fqdn}")
                raise ExternalTransientError(
                    f"Certificate request timed out after {self.timeout}s",
                    {"fqdn": fqdn},
                )
            except FileNotFoundError as e:
                raise ExternalPermanentError(f"certbot could not be started: {e}")

            if result.returncode != 0:
                output = f"{result.stdout}\n{result.stderr}".strip()
                reason = output.splitlines()[-1] if output else "certbot failed"
                logger.error(f"Certificate request failed for {fqdn}")
                logger.error(f"stderr: {result.stderr}")
                if any(marker in output.lower() for marker in _TRANSIENT_MARKERS):
                    raise ExternalTransientError(reason, {"fqdn": fqdn})
                raise ExternalPermanentError(reason, {"fqdn": fqdn})

            def read(name: str) -> bytes:
                path = os.path.join(workdir, name)
                if not os.path.isfile(path):
                    raise ExternalPermanentError(
                        f"certbot reported success but wrote no {name}", {"fqdn": fqdn}
                    )
                with open(path, "rb") as f:
                    return f.read()

            cert_pem = read("cert.pem")
            chain_pem = read("chain.pem")
            fullchain_pem = read("fullchain.pem")

        try:
            valid_from, valid_to = load_validity(cert_pem)
        except ValueError as e:
            raise ExternalPermanentError(
                f"certbot wrote a certificate that could not be parsed: {e}", {"fqdn": fqdn}
            )
        logger.info(f"Certificate obtained for {fqdn}, valid until {valid_to.isoformat()}")
        return IssuedCertificate(
            cert_pem=cert_pem,
            chain_pem=chain_pem,
            fullchain_pem=fullchain_pem,
            valid_from=valid_from,
            valid_to=valid_to,
        )
