# control-plane/api/v1/credentials.py
"""
Device Credential API Endpoints
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from api.deps import get_credential_manager, get_metrics_sampler, verify_operator
from core.credentials import CredentialChange, DeviceCredentialManager
from core.metrics import MetricsSampler
from database.session import get_db
from schemas.base import ErrorResponse
from schemas.credential import (
    CredentialChangeResponse,
    CredentialCreate,
    CredentialCreatedResponse,
    CredentialListResponse,
    CredentialResponse,
    ProfileResponse,
)
from schemas.metrics import DeviceMetricResponse, DeviceMetricsResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["credentials"])


def _change_response(change: CredentialChange) -> CredentialChangeResponse:
    return CredentialChangeResponse(
        credential=CredentialResponse.model_validate(change.credential),
        warning=change.warning,
    )


@router.post(
    "/gateways/{gateway_id}/credentials",
    response_model=CredentialCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"description": "Gateway not active or address pool exhausted", "model": ErrorResponse},
        423: {"description": "Gateway deploying", "model": ErrorResponse},
        502: {"description": "Gateway did not confirm the peer", "model": ErrorResponse},
    },
    summary="Create device credential",
)
async def create_credential(
    gateway_id: int,
    payload: CredentialCreate,
    db: Session = Depends(get_db),
    operator: str = Depends(verify_operator),
    manager: DeviceCredentialManager = Depends(get_credential_manager),
):
    credential, profile = await manager.create(db, gateway_id, payload.name, operator=operator)
    return CredentialCreatedResponse(
        credential=CredentialResponse.model_validate(credential),
        profile=ProfileResponse.model_validate(profile),
    )


@router.get(
    "/gateways/{gateway_id}/credentials",
    response_model=CredentialListResponse,
    summary="List device credentials of a gateway",
)
async def list_credentials(
    gateway_id: int,
    status_filter: Optional[str] = Query(None, alias="status", pattern="^(active|revoked)$"),
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    manager: DeviceCredentialManager = Depends(get_credential_manager),
):
    credentials = manager.list_for_gateway(db, gateway_id, status=status_filter)
    return CredentialListResponse(
        credentials=[CredentialResponse.model_validate(c) for c in credentials],
        total=len(credentials),
    )


@router.post(
    "/credentials/{credential_id}/revoke",
    response_model=CredentialChangeResponse,
    summary="Revoke device credential",
)
async def revoke_credential(
    credential_id: int,
    db: Session = Depends(get_db),
    operator: str = Depends(verify_operator),
    manager: DeviceCredentialManager = Depends(get_credential_manager),
):
    change = await manager.revoke(db, credential_id, operator=operator)
    return _change_response(change)


@router.post(
    "/credentials/{credential_id}/restore",
    response_model=CredentialChangeResponse,
    responses={502: {"description": "Gateway did not re-enable the peer", "model": ErrorResponse}},
    summary="Restore revoked device credential",
)
async def restore_credential(
    credential_id: int,
    db: Session = Depends(get_db),
    operator: str = Depends(verify_operator),
    manager: DeviceCredentialManager = Depends(get_credential_manager),
):
    change = await manager.restore(db, credential_id, operator=operator)
    return _change_response(change)


@router.delete(
    "/credentials/{credential_id}",
    response_model=CredentialChangeResponse,
    summary="Delete device credential",
)
async def delete_credential(
    credential_id: int,
    db: Session = Depends(get_db),
    operator: str = Depends(verify_operator),
    manager: DeviceCredentialManager = Depends(get_credential_manager),
):
    change = await manager.delete(db, credential_id, operator=operator)
    return _change_response(change)


@router.get(
    "/credentials/{credential_id}/profile",
    response_model=ProfileResponse,
    summary="Connection profile (config text and QR code)",
)
async def credential_profile(
    credential_id: int,
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    manager: DeviceCredentialManager = Depends(get_credential_manager),
):
    return ProfileResponse.model_validate(manager.profile(db, credential_id))


@router.get(
    "/credentials/{credential_id}/metrics",
    response_model=DeviceMetricsResponse,
    summary="Device traffic over a time window",
)
async def credential_metrics(
    credential_id: int,
    window_hours: int = Query(24, ge=1, le=24 * 31),
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    sampler: MetricsSampler = Depends(get_metrics_sampler),
):
    samples = sampler.list_device_metrics(db, credential_id, window_hours)
    return DeviceMetricsResponse(
        credential_id=credential_id,
        window_hours=window_hours,
        samples=[DeviceMetricResponse.model_validate(s) for s in samples],
    )
