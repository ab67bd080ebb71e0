# control-plane/core/domain_events.py
"""
Domain Events - things that happened to gateways and device credentials
"""

from typing import Any, Dict, Optional


class EventTypes:
    """All domain event type constants"""

    # Gateway lifecycle
    GATEWAY_REGISTERED = "GatewayRegistered"
    GATEWAY_DEPLOYMENT_STARTED = "GatewayDeploymentStarted"
    GATEWAY_ACTIVATED = "GatewayActivated"
    GATEWAY_DEPLOYMENT_FAILED = "GatewayDeploymentFailed"
    GATEWAY_DELETED = "GatewayDeleted"

    # Device credentials
    CREDENTIAL_CREATED = "CredentialCreated"
    CREDENTIAL_REVOKED = "CredentialRevoked"
    CREDENTIAL_RESTORED = "CredentialRestored"
    CREDENTIAL_DELETED = "CredentialDeleted"
    REMOTE_SYNC_FAILED = "RemoteSyncFailed"

    # Metrics
    COUNTER_RESET = "CounterReset"
    METRICS_PURGED = "MetricsPurged"

    @classmethod
    def all(cls) -> list[str]:
        return [v for k, v in vars(cls).items() if k.isupper()]


def gateway_status_payload(
    gateway_id: int,
    name: str,
    old_status: Optional[str],
    new_status: str,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "gateway_id": gateway_id,
        "name": name,
        "old_status": old_status,
        "new_status": new_status,
        "reason": reason,
    }


def deployment_failed_payload(
    gateway_id: int,
    name: str,
    step: str,
    step_index: int,
    output: str,
) -> Dict[str, Any]:
    return {
        "gateway_id": gateway_id,
        "name": name,
        "step": step,
        "step_index": step_index,
        "output": output,
    }


def credential_payload(
    credential_id: int,
    gateway_id: int,
    name: str,
    tunnel_ip: str,
    status: str,
) -> Dict[str, Any]:
    # Never carries key material
    return {
        "credential_id": credential_id,
        "gateway_id": gateway_id,
        "name": name,
        "tunnel_ip": tunnel_ip,
        "status": status,
    }


def counter_reset_payload(
    credential_id: int,
    direction: str,
    previous_bytes: int,
    current_bytes: int,
) -> Dict[str, Any]:
    return {
        "credential_id": credential_id,
        "direction": direction,
        "previous_bytes": previous_bytes,
        "current_bytes": current_bytes,
    }
