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
Host detection: scan -> owner -> fingerprint -> liveness for every open
port, with the latest result set cached in memory.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Sequence

from log import init_logger
from .fingerprint import DEFAULT_PROBES, VersionProbe, fingerprint
from .liveness import probe_liveness
from .models import (
    SECURE_PORTS,
    UNREACHABLE,
    HostDetection,
    LivenessResult,
    ProcessInfo,
    ScanResult,
    ServerIdentity,
)
from .scanner import DEFAULT_PORTS, identify_owner, scan_ports

logger = init_logger(__name__)


class HostProbe:
    """
    Read-only introspection of the local host. The only state it keeps is
    the most recent detection snapshot.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        ports: Sequence[int] = DEFAULT_PORTS,
        connect_timeout: float = 1.0,
        liveness_timeout: float = 3.0,
        version_timeout: float = 5.0,
        workers: int = 4,
        probes: Sequence[VersionProbe] = DEFAULT_PROBES,
    ):
        self.host = host
        self.ports = list(ports)
        self.connect_timeout = connect_timeout
        self.liveness_timeout = liveness_timeout
        self.version_timeout = version_timeout
        self.workers = max(1, workers)
        self.probes = list(probes)

        self._lock = Lock()
        self._detections: List[HostDetection] = []
        self._last_scan: Optional[datetime] = None

    def scan_ports(self, ports: Optional[Iterable[int]] = None) -> ScanResult:
        return scan_ports(
            self.ports if ports is None else ports, self.host, self.connect_timeout
        )

    def identify_owner(self, port: int) -> Optional[ProcessInfo]:
        return identify_owner(port, self.version_timeout)

    def fingerprint(self, port: int, process: Optional[ProcessInfo]) -> ServerIdentity:
        return fingerprint(port, process, self.probes, self.version_timeout)

    def probe_liveness(self, port: int, is_secure: bool) -> Optional[LivenessResult]:
        return probe_liveness(port, is_secure, self.host, self.liveness_timeout)

    def _detect_port(self, port: int, detected_at: datetime) -> HostDetection:
        process = self.identify_owner(port)
        if process is None:
            logger.debug(f"No owning process resolved for open port {port}")
        identity = self.fingerprint(port, process)
        is_secure = port in SECURE_PORTS
        liveness = self.probe_liveness(port, is_secure)
        return HostDetection(
            port=port,
            process_name=process.name if process else None,
            pid=process.pid if process else None,
            server_type=identity.server_type,
            server_version=identity.server_version,
            is_secure=is_secure,
            liveness_status=liveness.status_code if liveness else UNREACHABLE,
            detected_at=detected_at,
        )

    def detect_snapshot(self) -> Dict[str, Any]:
        """
        Run a full detection pass and replace the cached snapshot.

        Per-port work runs in a bounded pool. The cache is swapped in one
        step once every port has finished, so readers see either the old
        snapshot or the new one.

        Returns:
            ``{"last_scan", "detections"}`` for this pass, independent of
            any pass that finishes later
        """
        scan = self.scan_ports()
        detected_at = datetime.now(timezone.utc)

        if scan.open:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(scan.open))) as pool:
                detections = list(
                    pool.map(lambda p: self._detect_port(p, detected_at), scan.open)
                )
        else:
            detections = []

        with self._lock:
            self._detections = detections
            self._last_scan = detected_at

        logger.info(
            f"Detection finished: {len(detections)} open port(s) "
            f"{[d.port for d in detections]}"
        )
        return {"last_scan": detected_at, "detections": list(detections)}

    def detect(self) -> List[HostDetection]:
        return self.detect_snapshot()["detections"]

    def last_scan(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "last_scan": self._last_scan,
                "detections": list(self._detections),
            }
