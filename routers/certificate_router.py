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
API endpoints for the certificate lifecycle.
"""

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from errors import EngineError
from domain_registration.models import CertificateRecord
from middleware.admin_auth import require_admin_token
from routers.domain_registration_router import MessageResponse, get_service_or_503

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ssl", tags=["certificates"])


class GenerateCertificateRequest(BaseModel):
    subdomain_id: str = Field(..., min_length=1)
    port: int = Field(443, ge=1, le=65535)


class InstallCertificateRequest(BaseModel):
    certificate_id: str = Field(..., min_length=1)
    server_type: str = Field(..., min_length=1)


class CertificateResponse(BaseModel):
    """
    Response model for a CertificateRecord.

    Secret-store references are left out; key material never leaves the
    engine.
    """

    id: str
    domain_record_id: str
    fqdn: str
    install_target_port: int
    status: str
    created_at: str
    updated_at: str
    expires_at: Optional[str] = None
    issued_at: Optional[str] = None
    installed_at: Optional[str] = None
    revoked_at: Optional[str] = None
    installed_server_type: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_record(cls, record: CertificateRecord) -> "CertificateResponse":
        data = record.to_dict()
        for ref in ("key_material_ref", "cert_ref", "chain_ref", "fullchain_ref"):
            data.pop(ref)
        return cls(**data)


class InstallResponse(BaseModel):
    success: bool
    detail: str
    server_type: Optional[str] = None
    steps: List[str] = []
    superseded_certificate_id: Optional[str] = None
    certificate: CertificateResponse


@router.post("/generate", response_model=CertificateResponse, status_code=201)
async def generate_certificate(request: GenerateCertificateRequest):
    """
    Request a certificate for a subdomain.

    Blocks until the authority answers. A failed issuance is kept as a
    ``failed`` record; its id is in the error details.
    """
    try:
        service = get_service_or_503()
        record = await service.request_certificate(request.subdomain_id, request.port)
        return CertificateResponse.from_record(record)
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to generate certificate for {request.subdomain_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/install", response_model=InstallResponse)
async def install_certificate(request: InstallCertificateRequest):
    try:
        service = get_service_or_503()
        result = await service.install_certificate(request.certificate_id, request.server_type)
        record = await service.get_certificate(request.certificate_id)
        return InstallResponse(
            **result.to_dict(), certificate=CertificateResponse.from_record(record)
        )
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to install certificate {request.certificate_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/certificates", response_model=List[CertificateResponse])
async def list_certificates():
    try:
        service = get_service_or_503()
        return [CertificateResponse.from_record(r) for r in await service.list_certificates()]
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to list certificates: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/certificates/subdomain/{domain_id}", response_model=List[CertificateResponse])
async def list_subdomain_certificates(domain_id: str):
    try:
        service = get_service_or_503()
        records = await service.list_certificates(domain_id)
        return [CertificateResponse.from_record(r) for r in records]
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to list certificates for {domain_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/certificates/{certificate_id}", response_model=CertificateResponse)
async def get_certificate(certificate_id: str):
    try:
        service = get_service_or_503()
        return CertificateResponse.from_record(await service.get_certificate(certificate_id))
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to get certificate {certificate_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/certificates/{certificate_id}/revoke",
    response_model=CertificateResponse,
    dependencies=[Depends(require_admin_token())],
)
async def revoke_certificate(certificate_id: str):
    try:
        service = get_service_or_503()
        return CertificateResponse.from_record(await service.revoke_certificate(certificate_id))
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to revoke certificate {certificate_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete(
    "/certificates/{certificate_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin_token())],
)
async def delete_certificate(certificate_id: str, force: bool = Query(False)):
    """Delete a certificate and its key material. Installed ones need ``force=true``."""
    try:
        service = get_service_or_503()
        await service.delete_certificate(certificate_id, force)
        return MessageResponse(success=True, message="Certificate deleted successfully")
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to delete certificate {certificate_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
