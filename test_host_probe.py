#!/usr/bin/env python3
"""
Tests for port scanning, owner lookup, fingerprinting, liveness and the
detection cache.
"""

import socket
from collections import namedtuple
from unittest.mock import MagicMock, Mock, patch

import psutil
import pytest
import requests

from errors import ValidationError
from host_probe import scanner
from host_probe.detector import HostProbe
from host_probe.fingerprint import (
    ApacheProbe,
    NginxProbe,
    NodeProbe,
    fingerprint,
)
from host_probe.liveness import probe_liveness
from host_probe.models import UNKNOWN, UNREACHABLE, LivenessResult, ProcessInfo, ScanResult

Addr = namedtuple("Addr", "ip port")
Conn = namedtuple("Conn", "fd family type laddr raddr status pid")

WEB_PORTS = [80, 443, 3000, 8000, 8080, 8443]


def test_scan_only_443_open():
    with patch.object(scanner, "is_port_open", side_effect=lambda host, port, timeout: port == 443):
        result = scanner.scan_ports(WEB_PORTS)
    assert result.open == [443]
    assert result.closed == [80, 3000, 8000, 8080, 8443]


def test_scan_real_sockets():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    open_port = listener.getsockname()[1]

    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    closed_port = probe.getsockname()[1]
    probe.close()

    try:
        result = scanner.scan_ports([open_port, closed_port], timeout=0.5)
    finally:
        listener.close()

    assert result.open == [open_port]
    assert result.closed == [closed_port]


@pytest.mark.parametrize("ports", [[0], [65536], ["80"], [True]])
def test_scan_rejects_bad_ports(ports):
    with pytest.raises(ValidationError):
        scanner.scan_ports(ports)


def test_identify_owner_via_psutil():
    connections = [
        Conn(3, 2, 1, Addr("0.0.0.0", 22), (), psutil.CONN_LISTEN, 10),
        Conn(4, 2, 1, Addr("0.0.0.0", 443), (), psutil.CONN_LISTEN, 1234),
    ]
    process = MagicMock()
    process.name.return_value = "nginx"
    process.cmdline.return_value = ["nginx: master process /usr/sbin/nginx"]

    with patch.object(scanner.psutil, "net_connections", return_value=connections), \
            patch.object(scanner.psutil, "Process", return_value=process):
        owner = scanner.identify_owner(443)

    assert owner == ProcessInfo(pid=1234, name="nginx", cmdline=["nginx: master process /usr/sbin/nginx"])


def test_identify_owner_none_when_process_vanished():
    connections = [Conn(4, 2, 1, Addr("0.0.0.0", 8080), (), psutil.CONN_LISTEN, 999)]
    with patch.object(scanner.psutil, "net_connections", return_value=connections), \
            patch.object(scanner.psutil, "Process", side_effect=psutil.NoSuchProcess(999)):
        assert scanner.identify_owner(8080) is None


def test_identify_owner_none_when_nothing_listens():
    with patch.object(scanner.psutil, "net_connections", return_value=[]):
        assert scanner.identify_owner(3000) is None


def test_identify_owner_falls_back_to_lsof():
    lsof = (
        "COMMAND  PID USER   FD   TYPE DEVICE SIZE/OFF NODE NAME\n"
        "node    4321 app    20u  IPv4 123456      0t0  TCP *:3000 (LISTEN)\n"
    )
    with patch.object(scanner.psutil, "net_connections", side_effect=psutil.AccessDenied()), \
            patch.object(scanner.subprocess, "run", return_value=Mock(stdout=lsof)), \
            patch.object(scanner, "_process_info", return_value=None):
        owner = scanner.identify_owner(3000)

    assert owner.pid == 4321
    assert owner.name == "node"


@pytest.mark.parametrize(
    "name,cmdline,output,expected",
    [
        ("nginx", [], "nginx version: nginx/1.24.0", ("nginx", "1.24.0")),
        ("apache2", [], "Server version: Apache/2.4.58 (Ubuntu)", ("apache", "2.4.58")),
        ("httpd", [], "Server version: Apache/2.4.6 (CentOS)", ("apache", "2.4.6")),
        ("node", ["node", "/srv/app/server.js"], "v20.11.1", ("node.js", "20.11.1")),
        ("node", ["node", "node_modules/.bin/next", "start"], "v18.19.0", ("next.js", "18.19.0")),
        ("node", ["node", "/srv/koa-app/index.js"], "v18.19.0", ("koa.js", "18.19.0")),
        ("nginx", [], "command not found", ("nginx", UNKNOWN)),
        ("python3", ["python3", "-m", "http.server"], "", (UNKNOWN, UNKNOWN)),
    ],
)
def test_fingerprint(name, cmdline, output, expected):
    process = ProcessInfo(pid=1, name=name, cmdline=cmdline)
    with patch("host_probe.fingerprint.run_version_command", return_value=output):
        identity = fingerprint(80, process)
    assert (identity.server_type, identity.server_version) == expected


def test_fingerprint_without_owner():
    identity = fingerprint(80, None)
    assert identity.server_type == UNKNOWN
    assert identity.server_version == UNKNOWN


def test_version_commands():
    assert NginxProbe.version_command == ["nginx", "-v"]
    assert ApacheProbe.version_command == ["apachectl", "-v"]
    assert NodeProbe.version_command == ["node", "-v"]


def test_missing_version_binary_is_unknown():
    with patch("host_probe.fingerprint.subprocess.run", side_effect=FileNotFoundError("nginx")):
        identity = fingerprint(80, ProcessInfo(pid=1, name="nginx"))
    assert identity.server_version == UNKNOWN


@patch("host_probe.liveness.requests.head")
def test_liveness(mock_head):
    mock_head.return_value = Mock(status_code=301, headers={"Server": "nginx"})

    result = probe_liveness(443, True, timeout=1.5)

    assert result == LivenessResult(status_code=301, headers={"Server": "nginx"})
    args, kwargs = mock_head.call_args
    assert args[0] == "https://127.0.0.1:443/"
    assert kwargs["timeout"] == 1.5
    assert kwargs["allow_redirects"] is False


@patch("host_probe.liveness.requests.head")
def test_liveness_failure_is_none(mock_head):
    mock_head.side_effect = requests.exceptions.SSLError("handshake failure")
    assert probe_liveness(8443, True) is None
    mock_head.side_effect = requests.exceptions.ConnectTimeout()
    assert probe_liveness(80, False) is None


def stub_probe(open_ports, owners, liveness=None):
    """HostProbe whose OS-facing steps are replaced by table lookups."""
    probe = HostProbe(workers=2)
    probe.scan_ports = Mock(side_effect=lambda ports=None: ScanResult(
        open=list(open_ports), closed=[p for p in WEB_PORTS if p not in open_ports]
    ))
    probe.identify_owner = Mock(side_effect=lambda port: owners.get(port))
    liveness = liveness or {}
    probe.probe_liveness = Mock(
        side_effect=lambda port, secure: LivenessResult(liveness[port]) if port in liveness else None
    )
    return probe


def test_detect_composes_and_caches():
    owners = {
        443: ProcessInfo(pid=100, name="nginx"),
        3000: ProcessInfo(pid=200, name="node", cmdline=["node", "express-server.js"]),
        8080: None,
    }
    probe = stub_probe([443, 3000, 8080], owners, liveness={443: 200, 3000: 404})
    outputs = {"nginx": "nginx/1.25.3", "node": "v20.1.0"}

    with patch(
        "host_probe.fingerprint.run_version_command",
        side_effect=lambda cmd, timeout: outputs.get(cmd[0], ""),
    ):
        detections = probe.detect()

    by_port = {d.port: d for d in detections}
    assert sorted(by_port) == [443, 3000, 8080]

    assert by_port[443].server_type == "nginx"
    assert by_port[443].server_version == "1.25.3"
    assert by_port[443].is_secure is True
    assert by_port[443].liveness_status == 200

    assert by_port[3000].server_type == "express.js"
    assert by_port[3000].is_secure is False
    assert by_port[3000].liveness_status == 404

    assert by_port[8080].process_name is None
    assert by_port[8080].pid is None
    assert by_port[8080].server_type == UNKNOWN
    assert by_port[8080].liveness_status == UNREACHABLE

    snapshot = probe.last_scan()
    assert snapshot["last_scan"] == detections[0].detected_at
    assert [d.port for d in snapshot["detections"]] == [d.port for d in detections]


def test_detect_is_deterministic():
    owners = {80: ProcessInfo(pid=1, name="apache2"), 8443: ProcessInfo(pid=2, name="nginx")}
    probe = stub_probe([80, 8443], owners)
    outputs = {"apachectl": "Apache/2.4.58", "nginx": "nginx/1.24.0"}

    with patch(
        "host_probe.fingerprint.run_version_command",
        side_effect=lambda cmd, timeout: outputs.get(cmd[0], ""),
    ):
        first = probe.detect()
        second = probe.detect()

    assert [(d.port, d.server_type, d.server_version) for d in first] == [
        (d.port, d.server_type, d.server_version) for d in second
    ]


def test_stale_ports_do_not_survive_a_scan():
    owners = {80: ProcessInfo(pid=1, name="nginx"), 443: ProcessInfo(pid=1, name="nginx")}
    probe = stub_probe([80, 443], owners)
    with patch("host_probe.fingerprint.run_version_command", return_value=""):
        probe.detect()
        probe.scan_ports.side_effect = lambda ports=None: ScanResult(open=[443], closed=[80])
        probe.detect()

    assert [d.port for d in probe.last_scan()["detections"]] == [443]


def test_empty_cache_before_first_scan():
    assert HostProbe().last_scan() == {"last_scan": None, "detections": []}


def test_detect_snapshot_is_its_own_pass():
    owners = {80: ProcessInfo(pid=1, name="nginx"), 443: ProcessInfo(pid=1, name="nginx")}
    probe = stub_probe([80, 443], owners)
    with patch("host_probe.fingerprint.run_version_command", return_value=""):
        first = probe.detect_snapshot()
        probe.scan_ports.side_effect = lambda ports=None: ScanResult(open=[443], closed=[80])
        second = probe.detect_snapshot()

    assert [d.port for d in first["detections"]] == [80, 443]
    assert all(d.detected_at == first["last_scan"] for d in first["detections"])
    assert second["last_scan"] >= first["last_scan"]
    assert probe.last_scan()["last_scan"] == second["last_scan"]


def test_detect_snapshot_with_nothing_open():
    probe = stub_probe([], {})
    snapshot = probe.detect_snapshot()
    assert snapshot["detections"] == []
    assert snapshot["last_scan"] is not None
    assert probe.last_scan() == snapshot
