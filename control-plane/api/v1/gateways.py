# control-plane/api/v1/gateways.py
"""
Gateway API Endpoints
Register, deploy, sample and delete gateway hosts
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from api.deps import get_deployment_controller, get_metrics_sampler, get_registry, verify_operator
from core.deployment import DeploymentController
from core.gateway_registry import GatewayRegistry
from core.metrics import MetricsSampler
from database.session import get_db
from schemas.base import BaseResponse, ErrorResponse
from schemas.gateway import (
    DeploymentLogResponse,
    DeploymentResultResponse,
    DeploymentStepResponse,
    GatewayCreate,
    GatewayListResponse,
    GatewayResponse,
)
from schemas.metrics import CollectionResponse, HostMetricResponse, HostMetricsResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["gateways"])

STATUS_PATTERN = "^(registered|deploying|active|failed)$"


@router.post(
    "/gateways",
    response_model=GatewayResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"description": "Address already registered", "model": ErrorResponse},
        422: {"description": "Invalid registration input", "model": ErrorResponse},
    },
    summary="Register gateway host",
)
async def register_gateway(
    payload: GatewayCreate,
    db: Session = Depends(get_db),
    operator: str = Depends(verify_operator),
    registry: GatewayRegistry = Depends(get_registry),
):
    gateway = registry.register(
        db,
        name=payload.name,
        address=payload.address,
        port=payload.port,
        username=payload.username,
        password=payload.password,
        private_key=payload.private_key,
        vpn_subnet=payload.vpn_subnet,
        vpn_port=payload.vpn_port,
        transport=payload.transport,
        operator=operator,
    )
    return GatewayResponse.model_validate(gateway)


@router.get(
    "/gateways",
    response_model=GatewayListResponse,
    summary="List gateway hosts",
)
async def list_gateways(
    status_filter: Optional[str] = Query(None, alias="status", pattern=STATUS_PATTERN),
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    registry: GatewayRegistry = Depends(get_registry),
):
    gateways = registry.list(db, status=status_filter)
    return GatewayListResponse(
        gateways=[GatewayResponse.model_validate(gw) for gw in gateways],
        total=len(gateways),
    )


@router.get(
    "/gateways/{gateway_id}",
    response_model=GatewayResponse,
    responses={404: {"description": "Gateway not found", "model": ErrorResponse}},
    summary="Get gateway host",
)
async def get_gateway(
    gateway_id: int,
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    registry: GatewayRegistry = Depends(get_registry),
):
    return GatewayResponse.model_validate(registry.get(db, gateway_id))


@router.post(
    "/gateways/{gateway_id}/deploy",
    response_model=DeploymentResultResponse,
    responses={
        404: {"description": "Gateway not found", "model": ErrorResponse},
        409: {"description": "Gateway already active", "model": ErrorResponse},
        423: {"description": "Gateway busy", "model": ErrorResponse},
    },
    summary="Deploy (or resume deploying) a gateway",
    description="Runs the remaining deployment steps. A failed step leaves the gateway in 'failed'."
)
async def deploy_gateway(
    gateway_id: int,
    db: Session = Depends(get_db),
    operator: str = Depends(verify_operator),
    controller: DeploymentController = Depends(get_deployment_controller),
):
    result = await controller.deploy(db, gateway_id, operator=operator)
    return DeploymentResultResponse(
        gateway_id=result.gateway_id,
        status=result.status,
        succeeded=result.succeeded,
        steps_run=result.steps_run,
        failed_step=result.failed_step,
        output=result.output,
    )


@router.get(
    "/gateways/{gateway_id}/deployment-log",
    response_model=DeploymentLogResponse,
    summary="Deployment step history",
)
async def deployment_log(
    gateway_id: int,
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    controller: DeploymentController = Depends(get_deployment_controller),
):
    steps = controller.step_log(db, gateway_id)
    return DeploymentLogResponse(
        gateway_id=gateway_id,
        steps=[DeploymentStepResponse.model_validate(step) for step in steps],
    )


@router.delete(
    "/gateways/{gateway_id}",
    response_model=BaseResponse,
    summary="Delete gateway host",
    description="Soft delete. The remote host is not touched."
)
async def delete_gateway(
    gateway_id: int,
    db: Session = Depends(get_db),
    operator: str = Depends(verify_operator),
    registry: GatewayRegistry = Depends(get_registry),
):
    gateway = registry.delete(db, gateway_id, operator=operator)
    return BaseResponse(message=f"Gateway {gateway.name} deleted")


@router.post(
    "/gateways/{gateway_id}/collect",
    response_model=CollectionResponse,
    responses={
        409: {"description": "Gateway not active", "model": ErrorResponse},
        423: {"description": "Gateway deploying", "model": ErrorResponse},
    },
    summary="Sample host and device metrics now",
)
async def collect_now(
    gateway_id: int,
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    sampler: MetricsSampler = Depends(get_metrics_sampler),
):
    result = await sampler.collect_now(db, gateway_id)
    return CollectionResponse(
        gateway_id=result.gateway_id,
        host_sample=HostMetricResponse.model_validate(result.host_sample),
        device_samples=len(result.device_samples),
    )


@router.get(
    "/gateways/{gateway_id}/metrics",
    response_model=HostMetricsResponse,
    summary="Host metrics over a time window",
)
async def host_metrics(
    gateway_id: int,
    window_hours: int = Query(24, ge=1, le=24 * 31),
    db: Session = Depends(get_db),
    _: str = Depends(verify_operator),
    sampler: MetricsSampler = Depends(get_metrics_sampler),
):
    samples = sampler.list_host_metrics(db, gateway_id, window_hours)
    return HostMetricsResponse(
        gateway_id=gateway_id,
        window_hours=window_hours,
        samples=[HostMetricResponse.model_validate(s) for s in samples],
    )
