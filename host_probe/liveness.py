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
HTTP liveness probe for a local port.
"""

from typing import Optional

import requests
import urllib3

from log import init_logger
from .models import LivenessResult

logger = init_logger(__name__)

# local servers usually present certificates for some other name
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def probe_liveness(
    port: int, is_secure: bool, host: str = "127.0.0.1", timeout: float = 3.0
) -> Optional[LivenessResult]:
    """
    Send a HEAD request to the port.

    Returns:
        Status code and headers, or None on any failure (timeout,
        connection reset, TLS handshake error)
    """
    scheme = "https" if is_secure else "http"
    url = f"{scheme}://{host}:{port}/"
    try:
        response = requests.head(url, timeout=timeout, verify=False, allow_redirects=False)
    except requests.exceptions.RequestException as e:
        logger.debug(f"Liveness probe of {url} failed: {e}")
        return None
    return LivenessResult(status_code=response.status_code, headers=dict(response.headers))
