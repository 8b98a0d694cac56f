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
Port scanning and socket-to-process resolution.
"""

import re
import socket
import subprocess
from typing import Iterable, Optional

import psutil

from errors import ValidationError
from log import init_logger
from .models import UNKNOWN, ProcessInfo, ScanResult

logger = init_logger(__name__)

DEFAULT_PORTS = (80, 443, 3000, 8000, 8080, 8443)


def _check_ports(ports: Iterable[int]) -> list:
    checked = []
    for port in ports:
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise ValidationError("Port must be an integer between 1 and 65535", {"port": port})
        checked.append(port)
    return checked


def is_port_open(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def scan_ports(
    ports: Iterable[int] = DEFAULT_PORTS, host: str = "127.0.0.1", timeout: float = 1.0
) -> ScanResult:
    """
    Try a TCP connect to each port.

    A port is open iff the connection succeeds within ``timeout``; refusal
    and timeout both count as closed.
    """
    result = ScanResult()
    for port in _check_ports(ports):
        if is_port_open(host, port, timeout):
            result.open.append(port)
        else:
            result.closed.append(port)
    logger.debug(f"Scan of {host}: open={result.open} closed={result.closed}")
    return result


def _process_info(pid: int) -> Optional[ProcessInfo]:
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            name = proc.name()
            try:
                cmdline = proc.cmdline()
            except psutil.AccessDenied:
                cmdline = []
        return ProcessInfo(pid=pid, name=name, cmdline=cmdline)
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        return ProcessInfo(pid=pid, name=UNKNOWN)


_LSOF_LINE = re.compile(r"^(?P<name>\S+)\s+(?P<pid>\d+)\s")


def _lsof_owner(port: int, timeout: float) -> Optional[ProcessInfo]:
    try:
        result = subprocess.run(
            ["lsof", "-i", f":{port}", "-P", "-n", "-sTCP:LISTEN"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.debug(f"lsof lookup for port {port} unavailable: {e}")
        return None

    # first line is the header
    for line in result.stdout.splitlines()[1:]:
        match = _LSOF_LINE.match(line)
        if match:
            pid = int(match.group("pid"))
            return _process_info(pid) or ProcessInfo(pid=pid, name=match.group("name"))
    return None


def identify_owner(port: int, timeout: float = 5.0) -> Optional[ProcessInfo]:
    """
    Find the process listening on ``port``.

    Returns None when no owner can be resolved, which includes the
    process exiting between scan and lookup.
    """
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, PermissionError):
        return _lsof_owner(port, timeout)

    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        if conn.laddr.port == port:
            if conn.pid is None:
                # socket visible but owner hidden (other user); lsof may see more
                return _lsof_owner(port, timeout)
            return _process_info(conn.pid)
    return None
