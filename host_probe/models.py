from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

UNREACHABLE = "unreachable"
UNKNOWN = "unknown"
SECURE_PORTS = (443, 8443)


@dataclass
class ScanResult:
    open: List[int] = field(default_factory=list)
    closed: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProcessInfo:
    """The process that owns a listening socket."""

    pid: int
    name: str
    cmdline: List[str] = field(default_factory=list)


@dataclass
class ServerIdentity:
    server_type: str = UNKNOWN
    server_version: str = UNKNOWN


@dataclass
class LivenessResult:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class HostDetection:
    """What is listening on one port, as seen by the latest scan."""

    port: int
    process_name: Optional[str]
    pid: Optional[int]
    server_type: str
    server_version: str
    is_secure: bool
    liveness_status: Union[int, str]
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["detected_at"] = self.detected_at.isoformat()
        return data
