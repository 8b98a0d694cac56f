"""
Web server installers.
Wire an issued certificate into nginx or apache, or emit instructions for
servers this engine cannot configure itself.
"""

import abc
import logging
import os
import subprocess
from typing import Dict, List, Optional

from errors import ExternalPermanentError, ExternalTransientError, ValidationError
from .models import InstallBundle, InstallResult

logger = logging.getLogger(__name__)

NODE_FAMILY = ("node", "node.js", "express.js", "koa.js", "hapi.js", "next.js")


def run_command(cmd: List[str], timeout: int) -> subprocess.CompletedProcess:
    """Run a server management command with a hard timeout."""
    try:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise ExternalTransientError(
            f"Command timed out after {timeout}s: {' '.join(cmd)}", {"command": cmd}
        )
    except FileNotFoundError as e:
        raise ExternalPermanentError(f"Command not available: {e}", {"command": cmd})


class ServerInstaller(metaclass=abc.ABCMeta):
    server_type = "generic"

    @abc.abstractmethod
    def install(self, bundle: InstallBundle) -> InstallResult:
        """
        Configure the server to serve ``bundle`` and reload it.

        Implementations leave the server configuration as they found it
        when they fail.
        """
        pass


class _ConfigFileInstaller(ServerInstaller):
    """Shared write / test / reload / roll-back flow for file-configured servers."""

    test_command: List[str] = []
    reload_command: List[str] = []

    def __init__(self, conf_dir: str, timeout: int = 60, webroot: str = "/var/www/html",
                 proxy_upstream: Optional[str] = None):
        self.conf_dir = conf_dir
        self.timeout = timeout
        self.webroot = webroot
        self.proxy_upstream = proxy_upstream

    def config_path(self, bundle: InstallBundle) -> str:
        return os.path.join(self.conf_dir, f"certroute-{bundle.fqdn}-{bundle.port}.conf")

    @abc.abstractmethod
    def render(self, bundle: InstallBundle) -> str:
        pass

    def _restore(self, path: str, previous: Optional[str]) -> None:
        try:
            if previous is None:
                if os.path.exists(path):
                    os.unlink(path)
            else:
                with open(path, "w") as f:
                    f.write(previous)
        except OSError as e:
            logger.error(f"Failed to restore {path}: {e}")

    def install(self, bundle: InstallBundle) -> InstallResult:
        steps: List[str] = []
        path = self.config_path(bundle)
        previous = None
        if os.path.exists(path):
            with open(path, "r") as f:
                previous = f.read()
            steps.append(f"Backed up existing configuration {path}")

        try:
            os.makedirs(self.conf_dir, exist_ok=True)
            with open(path, "w") as f:
                f.write(self.render(bundle))
        except OSError as e:
            self._restore(path, previous)
            raise ExternalPermanentError(f"Could not write {path}: {e}")
        steps.append(f"Wrote {self.server_type} TLS configuration {path}")

        try:
            result = run_command(self.test_command, self.timeout)
            if result.returncode != 0:
                self._restore(path, previous)
                logger.error(f"{self.server_type} config test failed: {result.stderr}")
                return InstallResult(
                    success=False,
                    detail=f"Configuration test failed: {result.stderr.strip()}",
                    server_type=self.server_type,
                    steps=steps,
                )
            steps.append("Configuration test passed")

            result = run_command(self.reload_command, self.timeout)
            if result.returncode != 0:
                self._restore(path, previous)
                run_command(self.reload_command, self.timeout)
                return InstallResult(
                    success=False,
                    detail=f"Reload failed: {result.stderr.strip()}",
                    server_type=self.server_type,
                    steps=steps,
                )
        except (ExternalTransientError, ExternalPermanentError):
            self._restore(path, previous)
            raise
        steps.append(f"Reloaded {self.server_type}")

        logger.info(f"Installed certificate {bundle.certificate_id} on {self.server_type} "
                    f"for {bundle.fqdn}:{bundle.port}")
        return InstallResult(
            success=True,
            detail=f"SSL certificate installed for {bundle.fqdn} on {self.server_type}",
            server_type=self.server_type,
            steps=steps,
        )


class NginxInstaller(_ConfigFileInstaller):
    server_type = "nginx"
    test_command = ["nginx", "-t"]
    reload_command = ["nginx", "-s", "reload"]

    def render(self, bundle: InstallBundle) -> str:
        lines = [
            "server {",
            f"    listen {bundle.port} ssl;",
            f"    server_name {bundle.fqdn};",
            f"    ssl_certificate {bundle.fullchain_path};",
            f"    ssl_certificate_key {bundle.key_path};",
            "    ssl_protocols TLSv1.2 TLSv1.3;",
            "    ssl_prefer_server_ciphers on;",
        ]
        if self.proxy_upstream:
            lines.extend(
                [
                    "    location / {",
                    "        proxy_set_header Host $host;",
                    "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
                    "        proxy_set_header X-Forwarded-Proto $scheme;",
                    f"        proxy_pass {self.proxy_upstream};",
                    "    }",
                ]
            )
        else:
            lines.append(f"    root {self.webroot};")
        lines.append("}")
        return "\n".join(lines) + "\n"


class ApacheInstaller(_ConfigFileInstaller):
    server_type = "apache"
    test_command = ["apachectl", "configtest"]
    reload_command = ["apachectl", "graceful"]

    def render(self, bundle: InstallBundle) -> str:
        lines = []
        if bundle.port != 443:
            lines.append(f"Listen {bundle.port}")
        lines.extend(
            [
                f"<VirtualHost *:{bundle.port}>",
                f"    ServerName {bundle.fqdn}",
                "    SSLEngine on",
                f"    SSLCertificateFile {bundle.cert_path}",
                f"    SSLCertificateKeyFile {bundle.key_path}",
                f"    SSLCertificateChainFile {bundle.chain_path}",
            ]
        )
        if self.proxy_upstream:
            lines.extend(
                [
                    "    ProxyPreserveHost On",
                    f"    ProxyPass / {self.proxy_upstream}/",
                    f"    ProxyPassReverse / {self.proxy_upstream}/",
                ]
            )
        else:
            lines.append(f"    DocumentRoot {self.webroot}")
        lines.append("</VirtualHost>")
        return "\n".join(lines) + "\n"


class GenericInstaller(ServerInstaller):
    """
    Leaves the server untouched and writes instructions for wiring the
    certificate by hand. Node-family servers get an HTTPS snippet.
    """

    def __init__(self, instructions_dir: str, server_type: str = "generic"):
        self.instructions_dir = instructions_dir
        self.server_type = server_type

    def render(self, bundle: InstallBundle) -> str:
        if self.server_type in NODE_FAMILY:
            return (
                "const fs = require('fs');\n"
                "const https = require('https');\n\n"
                "const options = {\n"
                f"  key: fs.readFileSync('{bundle.key_path}'),\n"
                f"  cert: fs.readFileSync('{bundle.fullchain_path}'),\n"
                "};\n\n"
                f"https.createServer(options, app).listen({bundle.port});\n"
            )
        return (
            f"Certificate for {bundle.fqdn} (port {bundle.port})\n"
            f"  certificate: {bundle.cert_path}\n"
            f"  private key: {bundle.key_path}\n"
            f"  chain:       {bundle.chain_path}\n"
            f"  full chain:  {bundle.fullchain_path}\n"
            "Point the server's TLS settings at these files and restart it.\n"
        )

    def install(self, bundle: InstallBundle) -> InstallResult:
        suffix = "js" if self.server_type in NODE_FAMILY else "txt"
        path = os.path.join(
            self.instructions_dir, f"{bundle.fqdn}-{bundle.port}-https.{suffix}"
        )
        try:
            os.makedirs(self.instructions_dir, exist_ok=True)
            with open(path, "w") as f:
                f.write(self.render(bundle))
        except OSError as e:
            raise ExternalPermanentError(f"Could not write instructions to {path}: {e}")

        steps = [f"Generated installation instructions {path}", "Linked certificate files"]
        return InstallResult(
            success=True,
            detail=f"Installation instructions for {bundle.fqdn} written to {path}",
            server_type=self.server_type,
            steps=steps,
        )


class InstallerRegistry:
    """Maps a detected or requested server type onto its installer."""

    _ALIASES = {
        "nginx": "nginx",
        "apache": "apache",
        "apache2": "apache",
        "httpd": "apache",
    }

    def __init__(self, installers: Dict[str, ServerInstaller], instructions_dir: str):
        self.installers = installers
        self.instructions_dir = instructions_dir

    def resolve(self, server_type: str) -> ServerInstaller:
        if not server_type or not server_type.strip():
            raise ValidationError("Server type is required", {"server_type": server_type})
        normalized = server_type.strip().lower()
        family = self._ALIASES.get(normalized)
        if family and family in self.installers:
            return self.installers[family]
        return GenericInstaller(self.instructions_dir, server_type=normalized)


def build_installer_registry(
    nginx_conf_dir: str,
    apache_conf_dir: str,
    instructions_dir: str,
    timeout: int = 60,
    webroot: str = "/var/www/html",
    proxy_upstream: Optional[str] = None,
) -> InstallerRegistry:
    return InstallerRegistry(
        {
            "nginx": NginxInstaller(nginx_conf_dir, timeout, webroot, proxy_upstream),
            "apache": ApacheInstaller(apache_conf_dir, timeout, webroot, proxy_upstream),
        },
        instructions_dir,
    )
