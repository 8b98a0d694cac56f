"""
Host probe: discovers which web server software is listening locally.
"""

from .detector import HostProbe
from .models import HostDetection, ProcessInfo, ScanResult, ServerIdentity

__all__ = ["HostProbe", "HostDetection", "ProcessInfo", "ScanResult", "ServerIdentity"]
