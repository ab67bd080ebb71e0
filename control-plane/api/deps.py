# control-plane/api/deps.py
"""
Shared FastAPI dependencies

Operator authentication accepts either:
- Authorization: Bearer <jwt>  (subject = operator id)
- X-Admin-Token: <ADMIN_SECRET>, optionally with X-Operator-Id
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from config import settings
from core.auth import operator_from_token
from core.credentials import DeviceCredentialManager, credential_manager
from core.deployment import DeploymentController, deployment_controller
from core.gateway_registry import GatewayRegistry, gateway_registry
from core.metrics import MetricsSampler, metrics_sampler
from database.session import get_db

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_OPERATOR = "admin"


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": "Invalid or missing operator credentials",
            "error_code": "UNAUTHORIZED"
        },
        headers={"WWW-Authenticate": "Bearer"}
    )


async def verify_operator(
    authorization: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    x_operator_id: Optional[str] = Header(None, alias="X-Operator-Id"),
    db: Session = Depends(get_db),
) -> str:
    """Authenticate the caller and return the operator id used for audit"""
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            operator = operator_from_token(db, token.strip())
            if operator:
                return operator
        logger.warning("Rejected bearer token")
        raise _unauthorized()

    if x_admin_token and secrets.compare_digest(x_admin_token, settings.ADMIN_SECRET):
        return (x_operator_id or "").strip() or DEFAULT_ADMIN_OPERATOR

    logger.warning("Invalid admin token attempt")
    raise _unauthorized()


# Service accessors, overridable in tests via app.dependency_overrides

def get_registry() -> GatewayRegistry:
    return gateway_registry


def get_deployment_controller() -> DeploymentController:
    return deployment_controller


def get_credential_manager() -> DeviceCredentialManager:
    return credential_manager


def get_metrics_sampler() -> MetricsSampler:
    return metrics_sampler
