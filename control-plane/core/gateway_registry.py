# control-plane/core/gateway_registry.py
"""
Gateway Host Registry

Durable record of every managed gateway host and the only writer of the
gateways table. Lifecycle changes go through update_state(), which enforces
the transition table below, or claim_for_deployment(), a compare-and-swap
into 'deploying'. Outside this module the Deployment Controller is their
only caller.
"""

import ipaddress
import logging
import uuid
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from database.models import Gateway, GatewayStatus, Transport, utcnow
from .domain_events import EventTypes, gateway_status_payload
from .events import publish
from .exceptions import (
    ConflictError,
    HostBusyError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)


GATEWAY_TRANSITIONS: dict[GatewayStatus, set[GatewayStatus]] = {
    GatewayStatus.REGISTERED: {GatewayStatus.DEPLOYING, GatewayStatus.DELETED},
    GatewayStatus.DEPLOYING: {GatewayStatus.ACTIVE, GatewayStatus.FAILED, GatewayStatus.DELETED},
    GatewayStatus.FAILED: {GatewayStatus.DEPLOYING, GatewayStatus.DELETED},
    GatewayStatus.ACTIVE: {GatewayStatus.DELETED},
    GatewayStatus.DELETED: set(),
}

# States a deployment may start from
DEPLOYABLE_STATES = {s for s, targets in GATEWAY_TRANSITIONS.items() if GatewayStatus.DEPLOYING in targets}

# Connection details may only change before the host is serving
EDITABLE_STATES = {GatewayStatus.REGISTERED, GatewayStatus.FAILED}

# Smallest subnet that still leaves room for the gateway and one device
MAX_PREFIX_LENGTH = 30


def can_transition(current: GatewayStatus, target: GatewayStatus) -> bool:
    return target in GATEWAY_TRANSITIONS.get(current, set())


class GatewayRegistry:
    """CRUD surface over Gateway rows"""

    def register(
        self,
        db: Session,
        name: str,
        address: str,
        port: int,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        vpn_subnet: Optional[str] = None,
        vpn_port: Optional[int] = None,
        transport: str = Transport.SSH.value,
        operator: Optional[str] = None,
    ) -> Gateway:
        """
        Register a new gateway host in state 'registered'

        Raises:
            ValidationFailedError: missing address/username/credential, bad port or subnet
            ConflictError: another live host already uses address:port
        """
        address = (address or "").strip()
        username = (username or "").strip()
        name = (name or "").strip() or address

        if not address:
            raise ValidationFailedError("address is required")
        if not username:
            raise ValidationFailedError("username is required")
        if not password and not private_key:
            raise ValidationFailedError("a password or private key is required")
        _validate_port(port, "port")
        if transport not in {t.value for t in Transport}:
            raise ValidationFailedError(f"unknown transport '{transport}'")

        subnet = _normalize_subnet(vpn_subnet or settings.DEFAULT_VPN_SUBNET)
        vpn_port = vpn_port or settings.DEFAULT_VPN_PORT
        _validate_port(vpn_port, "vpn_port")

        if self._find_live_by_endpoint(db, address, port) is not None:
            raise ConflictError(f"A gateway is already registered at {address}:{port}")

        gateway = Gateway(
            name=name,
            address=address,
            ssh_port=port,
            username=username,
            password=password,
            private_key=private_key,
            transport=transport,
            container_name=f"{settings.CONTAINER_PREFIX}-{uuid.uuid4().hex[:8]}",
            vpn_port=vpn_port,
            vpn_subnet=subnet,
            status=GatewayStatus.REGISTERED.value,
            deploy_progress=0,
            created_by=operator,
        )
        db.add(gateway)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ConflictError(f"A gateway is already registered at {address}:{port}")
        db.refresh(gateway)

        logger.info(f"Registered gateway {gateway.name} (id={gateway.id}) at {address}:{port}")
        publish(
            EventTypes.GATEWAY_REGISTERED,
            gateway_status_payload(gateway.id, gateway.name, None, gateway.status),
            source="gateway_registry",
            operator=operator,
        )
        return gateway

    def get(self, db: Session, gateway_id: int) -> Gateway:
        """Live gateway by id; soft-deleted rows are reported as not found"""
        gateway = db.get(Gateway, gateway_id)
        if gateway is None or gateway.deleted_at is not None:
            raise NotFoundError(f"Gateway with id {gateway_id} not found")
        return gateway

    def list(self, db: Session, status: Optional[str] = None) -> List[Gateway]:
        query = db.query(Gateway).filter(Gateway.deleted_at.is_(None))
        if status:
            query = query.filter(Gateway.status == GatewayStatus(status).value)
        return query.order_by(Gateway.id).all()

    def claim_for_deployment(self, db: Session, gateway: Gateway) -> Gateway:
        """
        Move a gateway to 'deploying' with a single conditional UPDATE

        Only one caller, in any process, can win the claim for a given row.

        Raises:
            HostBusyError: the row is already deploying
            InvalidTransitionError: the row is in a state deployment cannot start from
        """
        claimed = (
            db.query(Gateway)
            .filter(
                Gateway.id == gateway.id,
                Gateway.deleted_at.is_(None),
                Gateway.status.in_([s.value for s in DEPLOYABLE_STATES]),
            )
            .update(
                {Gateway.status: GatewayStatus.DEPLOYING.value, Gateway.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(gateway)

        if claimed != 1:
            if gateway.status == GatewayStatus.DEPLOYING.value:
                raise HostBusyError(f"Gateway {gateway.name} is already being deployed")
            raise InvalidTransitionError("Gateway", gateway.status, GatewayStatus.DEPLOYING.value)

        logger.info(f"Gateway {gateway.name}: claimed for deployment")
        return gateway

    def update_state(
        self,
        db: Session,
        gateway: Gateway,
        new_status: GatewayStatus,
        reason: Optional[str] = None,
        operator: Optional[str] = None,
    ) -> Gateway:
        """
        Move a gateway along the lifecycle

        Raises:
            InvalidTransitionError: the move is not in GATEWAY_TRANSITIONS
        """
        current = GatewayStatus(gateway.status)
        if not can_transition(current, new_status):
            raise InvalidTransitionError("Gateway", current.value, new_status.value)

        gateway.status = new_status.value
        if new_status == GatewayStatus.DELETED:
            gateway.deleted_at = utcnow()
        db.commit()
        db.refresh(gateway)

        logger.info(f"Gateway {gateway.name}: {current.value} -> {new_status.value}")
        return gateway

    def update_connection(
        self,
        db: Session,
        gateway_id: int,
        address: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> Gateway:
        """Change connection details of a host that is not serving yet"""
        gateway = self.get(db, gateway_id)
        if GatewayStatus(gateway.status) not in EDITABLE_STATES:
            raise InvalidStateError(
                f"Connection details of gateway {gateway.name} are immutable in state '{gateway.status}'"
            )

        new_address = (address or gateway.address).strip()
        new_port = port if port is not None else gateway.ssh_port
        _validate_port(new_port, "port")

        if (new_address, new_port) != (gateway.address, gateway.ssh_port):
            other = self._find_live_by_endpoint(db, new_address, new_port)
            if other is not None and other.id != gateway.id:
                raise ConflictError(f"A gateway is already registered at {new_address}:{new_port}")

        before = _connection_fingerprint(gateway)
        gateway.address = new_address
        gateway.ssh_port = new_port
        if username:
            gateway.username = username.strip()
        if password is not None:
            gateway.password = password or None
        if private_key is not None:
            gateway.private_key = private_key or None
        if not gateway.password and not gateway.private_key:
            db.rollback()
            raise ValidationFailedError("a password or private key is required")

        if _connection_fingerprint(gateway) != before:
            # Possibly another machine: the next deployment starts from step 1
            gateway.deploy_progress = 0
            gateway.failed_step = None
            gateway.failure_output = None
            logger.info(f"Connection details of gateway {gateway.name} changed, deployment progress reset")

        db.commit()
        db.refresh(gateway)
        return gateway

    def delete(self, db: Session, gateway_id: int, operator: Optional[str] = None) -> Gateway:
        """
        Soft-delete a gateway. Idempotent.

        The remote host is left untouched: its container and peers keep running.
        """
        gateway = db.get(Gateway, gateway_id)
        if gateway is None:
            raise NotFoundError(f"Gateway with id {gateway_id} not found")
        if gateway.status == GatewayStatus.DELETED.value:
            return gateway

        old_status = gateway.status
        self.update_state(db, gateway, GatewayStatus.DELETED, operator=operator)
        publish(
            EventTypes.GATEWAY_DELETED,
            gateway_status_payload(gateway.id, gateway.name, old_status, gateway.status),
            source="gateway_registry",
            operator=operator,
        )
        return gateway

    @staticmethod
    def _find_live_by_endpoint(db: Session, address: str, port: int) -> Optional[Gateway]:
        return (
            db.query(Gateway)
            .filter(
                Gateway.address == address,
                Gateway.ssh_port == port,
                Gateway.deleted_at.is_(None),
            )
            .first()
        )


def _connection_fingerprint(gateway: Gateway) -> tuple:
    return (gateway.address, gateway.ssh_port, gateway.username, gateway.password, gateway.private_key)


def _validate_port(port, field_name: str) -> None:
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        raise ValidationFailedError(f"{field_name} must be an integer between 1 and 65535")


def _normalize_subnet(subnet: str) -> str:
    try:
        network = ipaddress.IPv4Network(subnet.strip(), strict=True)
    except ValueError as e:
        raise ValidationFailedError(f"invalid vpn_subnet '{subnet}': {e}")
    if network.prefixlen > MAX_PREFIX_LENGTH:
        raise ValidationFailedError(f"vpn_subnet '{subnet}' is too small")
    return str(network)


gateway_registry = GatewayRegistry()
