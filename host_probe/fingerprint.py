# Copyright 2024-2025 The vLLM Production Stack Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Server fingerprinting.

Each server family is a VersionProbe: it claims processes by name and
extracts a version from its family's version command. Adding a family
means adding a probe to ``DEFAULT_PROBES``.
"""

import abc
import re
import subprocess
from typing import List, Optional, Sequence

from log import init_logger
from .models import UNKNOWN, ProcessInfo, ServerIdentity

logger = init_logger(__name__)

NODE_FRAMEWORKS = (
    ("express", "express.js"),
    ("koa", "koa.js"),
    ("hapi", "hapi.js"),
    ("next", "next.js"),
)


def run_version_command(cmd: List[str], timeout: float) -> str:
    """Combined stdout/stderr of a version query, or "" when it cannot run."""
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, PermissionError) as e:
        logger.debug(f"Version command {cmd[0]} unavailable: {e}")
        return ""
    return f"{result.stdout}\n{result.stderr}"


class VersionProbe(metaclass=abc.ABCMeta):
    server_type = UNKNOWN
    process_names: Sequence[str] = ()
    version_command: List[str] = []
    version_pattern: Optional[re.Pattern] = None

    def matches(self, process: ProcessInfo) -> bool:
        name = process.name.lower()
        return any(name == n or name.startswith(n) for n in self.process_names)

    def version(self, timeout: float) -> str:
        if not self.version_command or self.version_pattern is None:
            return UNKNOWN
        match = self.version_pattern.search(run_version_command(self.version_command, timeout))
        return match.group(1) if match else UNKNOWN

    @abc.abstractmethod
    def identify(self, process: ProcessInfo, timeout: float) -> ServerIdentity:
        pass


class NginxProbe(VersionProbe):
    server_type = "nginx"
    process_names = ("nginx",)
    # nginx prints its version on stderr
    version_command = ["nginx", "-v"]
    version_pattern = re.compile(r"nginx/(\d+\.\d+\.\d+)")

    def identify(self, process: ProcessInfo, timeout: float) -> ServerIdentity:
        return ServerIdentity(self.server_type, self.version(timeout))


class ApacheProbe(VersionProbe):
    server_type = "apache"
    process_names = ("apache2", "httpd")
    version_command = ["apachectl", "-v"]
    version_pattern = re.compile(r"Apache/(\d+\.\d+\.\d+)")

    def identify(self, process: ProcessInfo, timeout: float) -> ServerIdentity:
        return ServerIdentity(self.server_type, self.version(timeout))


class NodeProbe(VersionProbe):
    server_type = "node.js"
    process_names = ("node",)
    version_command = ["node", "-v"]
    version_pattern = re.compile(r"v?(\d+\.\d+\.\d+)")

    @staticmethod
    def framework(cmdline: List[str]) -> Optional[str]:
        command = " ".join(cmdline).lower()
        for hint, server_type in NODE_FRAMEWORKS:
            if hint in command:
                return server_type
        return None

    def identify(self, process: ProcessInfo, timeout: float) -> ServerIdentity:
        server_type = self.framework(process.cmdline) or self.server_type
        return ServerIdentity(server_type, self.version(timeout))


class UnknownProbe(VersionProbe):
    """Fallback: matches everything and reports nothing."""

    def matches(self, process: ProcessInfo) -> bool:
        return True

    def identify(self, process: ProcessInfo, timeout: float) -> ServerIdentity:
        return ServerIdentity()


DEFAULT_PROBES: List[VersionProbe] = [NginxProbe(), ApacheProbe(), NodeProbe(), UnknownProbe()]


def fingerprint(
    port: int,
    process: Optional[ProcessInfo],
    probes: Sequence[VersionProbe] = DEFAULT_PROBES,
    timeout: float = 5.0,
) -> ServerIdentity:
    """
    Identify the server software behind ``port``.

    The first probe (in priority order) that claims the process decides
    the server type. A missing or unparseable version is "unknown".
    """
    if process is None:
        return ServerIdentity()
    for probe in probes:
        if probe.matches(process):
            identity = probe.identify(process, timeout)
            logger.debug(
                f"Port {port}: {process.name} ({process.pid}) -> "
                f"{identity.server_type} {identity.server_version}"
            )
            return identity
    return ServerIdentity()
