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
API endpoints for local web server detection.
"""

from typing import List, Optional, Union
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import EngineError
from log import init_logger
from routers.domain_registration_router import get_service_or_503

logger = init_logger(__name__)

router = APIRouter(prefix="/api/webserver", tags=["host-probe"])


class ScanResponse(BaseModel):
    open: List[int]
    closed: List[int]


class DetectionResponse(BaseModel):
    port: int
    process_name: Optional[str] = None
    pid: Optional[int] = None
    server_type: str
    server_version: str
    is_secure: bool
    liveness_status: Union[int, str]
    detected_at: str


class DetectionsResponse(BaseModel):
    last_scan: Optional[str] = None
    detections: List[DetectionResponse]


@router.get("/scan", response_model=ScanResponse)
async def scan_ports():
    """Which of the configured web ports accept connections."""
    try:
        service = get_service_or_503()
        return ScanResponse(**(await service.scan_ports()).to_dict())
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Port scan failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/detect", response_model=DetectionsResponse)
async def detect():
    """Run a full detection pass, replacing the cached results."""
    try:
        service = get_service_or_503()
        snapshot = await service.detect()
        return DetectionsResponse(
            last_scan=snapshot["last_scan"].isoformat(),
            detections=[DetectionResponse(**d.to_dict()) for d in snapshot["detections"]],
        )
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Detection failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/detections", response_model=DetectionsResponse)
async def get_detections():
    """Results of the most recent detection pass."""
    try:
        service = get_service_or_503()
        snapshot = await service.last_scan()
        return DetectionsResponse(
            last_scan=snapshot["last_scan"].isoformat() if snapshot["last_scan"] else None,
            detections=[DetectionResponse(**d.to_dict()) for d in snapshot["detections"]],
        )
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to read detections: {e}")
        raise HTTPException(status_code=500, detail=str(e))
