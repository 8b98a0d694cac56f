"""
API endpoints for subdomain registration and DNS provider credentials.
"""

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from errors import EngineError
from domain_registration.models import ProviderCredentials
from middleware.admin_auth import require_admin_token
from services.engine_service import get_engine_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["domain-registration"])


# Request models
class CreateSubdomainRequest(BaseModel):
    """Request model for subdomain creation."""

    subdomain: str = Field(..., min_length=1, max_length=63)
    zone_id: str = Field(..., min_length=1)


class CredentialsRequest(BaseModel):
    """DNS provider credentials. ``access_key`` is the account email for a global key."""

    access_key: Optional[str] = None
    secret: str = Field(..., min_length=1)
    region: Optional[str] = None


# Response models
class PublicAddressResponse(BaseModel):
    ip: str


class ZoneResponse(BaseModel):
    id: str
    name: str
    status: Optional[str] = None


class SubdomainResponse(BaseModel):
    """Response model for a DomainRecord."""

    id: str
    label: str
    zone_id: str
    fqdn: str
    target_address: str
    created_at: str
    updated_at: str
    certificate_installed: bool


class ReconcileResponse(BaseModel):
    dropped: bool
    record: Optional[SubdomainResponse] = None


class CredentialsStatusResponse(BaseModel):
    configured: bool
    region: Optional[str] = None


class MessageResponse(BaseModel):
    success: bool
    message: str


def get_service_or_503():
    """Get the engine service or raise 503."""
    service = get_engine_service()
    if not service:
        raise HTTPException(status_code=503, detail="Engine service not available")
    return service


@router.get("/api/subdomains/ip", response_model=PublicAddressResponse)
async def get_public_ip():
    """Current public IPv4 address of this host."""
    try:
        service = get_service_or_503()
        return PublicAddressResponse(ip=await service.get_public_address())
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to get public IP: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/subdomains/zones", response_model=List[ZoneResponse])
async def list_zones():
    """
    List DNS zones visible to the configured credentials.

    Always read through to the provider.
    """
    try:
        service = get_service_or_503()
        zones = await service.list_zones()
        return [ZoneResponse(**zone.to_dict()) for zone in zones]
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to list zones: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/subdomains", response_model=SubdomainResponse, status_code=201)
async def create_subdomain(request: CreateSubdomainRequest):
    """
    Point ``subdomain.<zone>`` at this host's public address.

    Re-submitting an existing name updates it in place.
    """
    try:
        service = get_service_or_503()
        record = await service.create_subdomain(request.subdomain, request.zone_id)
        return SubdomainResponse(**record.to_dict())
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to create subdomain {request.subdomain}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/subdomains", response_model=List[SubdomainResponse])
async def list_subdomains(zone_id: Optional[str] = Query(None)):
    try:
        service = get_service_or_503()
        records = await service.list_subdomains(zone_id)
        return [SubdomainResponse(**r.to_dict()) for r in records]
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to list subdomains: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/subdomains/{record_id}", response_model=SubdomainResponse)
async def get_subdomain(record_id: str):
    try:
        service = get_service_or_503()
        record = await service.get_subdomain(record_id)
        return SubdomainResponse(**record.to_dict())
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to get subdomain {record_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/api/subdomains/{record_id}/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_admin_token())],
)
async def reconcile_subdomain(record_id: str, drop: bool = Query(False)):
    """
    Repair a subdomain whose A record no longer exists at the provider.

    With ``drop=true`` the local record is removed instead of recreated.
    """
    try:
        service = get_service_or_503()
        record = await service.reconcile_subdomain(record_id, drop)
        if record is None:
            return ReconcileResponse(dropped=True)
        return ReconcileResponse(dropped=False, record=SubdomainResponse(**record.to_dict()))
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to reconcile subdomain {record_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete(
    "/api/subdomains/{record_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin_token())],
)
async def delete_subdomain(record_id: str):
    try:
        service = get_service_or_503()
        await service.delete_subdomain(record_id)
        return MessageResponse(success=True, message="Subdomain deleted successfully")
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to delete subdomain {record_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/credentials", response_model=CredentialsStatusResponse)
async def get_credentials():
    """Whether DNS provider credentials are stored. Never returns the secret."""
    try:
        service = get_service_or_503()
        return CredentialsStatusResponse(**await service.get_credentials_status())
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to read credentials status: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/api/credentials",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin_token())],
)
async def save_credentials(request: CredentialsRequest):
    """Validate credentials against the DNS provider, then store them encrypted."""
    try:
        service = get_service_or_503()
        await service.save_credentials(
            ProviderCredentials(
                access_key=request.access_key, secret=request.secret, region=request.region
            )
        )
        return MessageResponse(success=True, message="Credentials validated and saved")
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to save credentials: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete(
    "/api/credentials",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin_token())],
)
async def delete_credentials():
    try:
        service = get_service_or_503()
        await service.delete_credentials()
        return MessageResponse(success=True, message="Credentials deleted")
    except (HTTPException, EngineError):
        raise
    except Exception as e:
        logger.error(f"Failed to delete credentials: {e}")
        raise HTTPException(status_code=500, detail=str(e))
