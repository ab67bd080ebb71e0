# control-plane/core/credentials.py
"""
Device Credential Manager

Creates, revokes, restores and deletes per-device VPN credentials on an
active gateway. Ordering rules:

- create: the peer is registered on the host first; the row is written only
  after the host confirmed. A failed confirmation leaves nothing behind.
- revoke / delete: the local change always applies. If the host does not
  follow, the caller gets a warning and a RemoteSyncFailed event is raised.
- restore: the host must re-enable the peer first; otherwise the credential
  stays revoked.

Key material is generated here and never logged.
"""

import base64
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import CredentialStatus, DeviceCredential, Gateway, GatewayStatus, utcnow
from .domain_events import EventTypes, credential_payload
from .events import publish
from .exceptions import (
    ConflictError,
    HostBusyError,
    HostUnreachableError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from .gateway_registry import GatewayRegistry, gateway_registry
from .host_locks import HostLocks, host_locks
from .ipam import allocate_ip
from .profile import ConnectionProfile, ProfileRenderer, profile_renderer
from .remote import CommandResult, ExecutorFactory, HostConnection, executor_for
from .wireguard import GatewayCommands, confirmed

logger = logging.getLogger(__name__)


CREDENTIAL_TRANSITIONS: dict[CredentialStatus, set[CredentialStatus]] = {
    CredentialStatus.ACTIVE: {CredentialStatus.REVOKED},
    CredentialStatus.REVOKED: {CredentialStatus.ACTIVE},
}


def generate_keypair() -> Tuple[str, str]:
    """New X25519 key pair as (private_key, public_key), base64 like `wg genkey`"""
    private_key = X25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(private_bytes).decode(), base64.b64encode(public_bytes).decode()


def generate_preshared_key() -> str:
    return base64.b64encode(os.urandom(32)).decode()


@dataclass
class CredentialChange:
    """Result of revoke/restore/delete; warning is set when the host did not follow"""
    credential: DeviceCredential
    warning: Optional[str] = None


class DeviceCredentialManager:
    """Lifecycle of device credentials on active gateways"""

    def __init__(
        self,
        executor_factory: ExecutorFactory = executor_for,
        renderer: ProfileRenderer = profile_renderer,
        registry: GatewayRegistry = gateway_registry,
        locks: HostLocks = host_locks,
    ):
        self.executor_factory = executor_factory
        self.renderer = renderer
        self.registry = registry
        self.locks = locks

    # === Queries ===

    def get(self, db: Session, credential_id: int) -> DeviceCredential:
        credential = db.get(DeviceCredential, credential_id)
        if credential is None or credential.deleted_at is not None:
            raise NotFoundError(f"Credential with id {credential_id} not found")
        return credential

    def list_for_gateway(self, db: Session, gateway_id: int, status: Optional[str] = None) -> List[DeviceCredential]:
        gateway = self.registry.get(db, gateway_id)
        query = db.query(DeviceCredential).filter(
            DeviceCredential.gateway_id == gateway.id,
            DeviceCredential.deleted_at.is_(None),
        )
        if status:
            query = query.filter(DeviceCredential.status == CredentialStatus(status).value)
        return query.order_by(DeviceCredential.id).all()

    def profile(self, db: Session, credential_id: int) -> ConnectionProfile:
        credential = self.get(db, credential_id)
        gateway = credential.gateway
        if not gateway.server_public_key:
            raise InvalidStateError(f"Gateway {gateway.name} has no server key yet")
        return self.renderer.render(credential, gateway)

    # === Mutations ===

    async def create(
        self,
        db: Session,
        gateway_id: int,
        name: str,
        operator: Optional[str] = None,
    ) -> Tuple[DeviceCredential, ConnectionProfile]:
        """
        Issue a credential for a new device

        Raises:
            ValidationFailedError: empty name
            NotFoundError: unknown or deleted gateway
            HostBusyError: gateway is deploying
            InvalidStateError: gateway is not active
            AddressPoolExhaustedError: no free tunnel address
            HostUnreachableError: host did not confirm the new peer
        """
        name = (name or "").strip()
        if not name:
            raise ValidationFailedError("name is required")

        gateway = self.registry.get(db, gateway_id)
        self._require_active(gateway)

        async with self.locks.get(gateway.id):
            db.refresh(gateway)
            self._require_active(gateway)

            tunnel_ip = allocate_ip(db, gateway)
            private_key, public_key = generate_keypair()
            preshared_key = generate_preshared_key()

            commands = GatewayCommands(gateway)
            result = await self._execute(gateway, commands.add_peer(public_key, tunnel_ip, preshared_key))
            if not _confirmed(result):
                raise HostUnreachableError(
                    f"Gateway {gateway.name} did not confirm the new peer",
                    output=result.describe(),
                )

            credential = DeviceCredential(
                gateway_id=gateway.id,
                name=name,
                public_key=public_key,
                private_key=private_key,
                preshared_key=preshared_key,
                tunnel_ip=tunnel_ip,
                status=CredentialStatus.ACTIVE.value,
                created_by=operator,
            )
            db.add(credential)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                await self._execute(gateway, commands.remove_peer(public_key))
                raise ConflictError(f"Tunnel address {tunnel_ip} was taken concurrently, try again")
            db.refresh(credential)

        logger.info(f"Created credential {credential.name} (id={credential.id}) on {gateway.name} at {tunnel_ip}")
        self._publish(EventTypes.CREDENTIAL_CREATED, credential, operator)
        return credential, self.renderer.render(credential, gateway)

    async def revoke(self, db: Session, credential_id: int, operator: Optional[str] = None) -> CredentialChange:
        """Disable a credential; the local state changes even if the host is unreachable"""
        credential = self.get(db, credential_id)
        self._check_transition(credential, CredentialStatus.REVOKED)
        gateway = credential.gateway

        async with self._lock_for(gateway):
            warning = await self._remove_remote(gateway, credential, "revoke", operator)
            credential.status = CredentialStatus.REVOKED.value
            credential.revoked_at = utcnow()
            db.commit()
            db.refresh(credential)

        logger.info(f"Revoked credential {credential.name} (id={credential.id})")
        self._publish(EventTypes.CREDENTIAL_REVOKED, credential, operator)
        return CredentialChange(credential=credential, warning=warning)

    async def restore(self, db: Session, credential_id: int, operator: Optional[str] = None) -> CredentialChange:
        """
        Re-enable a revoked credential with its original keys and address

        Raises:
            HostUnreachableError: host did not re-add the peer; credential stays revoked
        """
        credential = self.get(db, credential_id)
        self._check_transition(credential, CredentialStatus.ACTIVE)
        gateway = credential.gateway
        self._require_active(gateway)

        async with self.locks.get(gateway.id):
            command = GatewayCommands(gateway).add_peer(
                credential.public_key, credential.tunnel_ip, credential.preshared_key
            )
            result = await self._execute(gateway, command)
            if not _confirmed(result):
                raise HostUnreachableError(
                    f"Gateway {gateway.name} did not re-enable credential {credential.name}",
                    output=result.describe(),
                )
            credential.status = CredentialStatus.ACTIVE.value
            credential.revoked_at = None
            db.commit()
            db.refresh(credential)

        logger.info(f"Restored credential {credential.name} (id={credential.id})")
        self._publish(EventTypes.CREDENTIAL_RESTORED, credential, operator)
        return CredentialChange(credential=credential)

    async def delete(self, db: Session, credential_id: int, operator: Optional[str] = None) -> CredentialChange:
        """Soft-delete a credential and release its tunnel address"""
        credential = self.get(db, credential_id)
        gateway = credential.gateway

        async with self._lock_for(gateway):
            warning = await self._remove_remote(gateway, credential, "delete", operator)
            credential.deleted_at = utcnow()
            db.commit()
            db.refresh(credential)

        logger.info(f"Deleted credential {credential.name} (id={credential.id}), released {credential.tunnel_ip}")
        self._publish(EventTypes.CREDENTIAL_DELETED, credential, operator)
        return CredentialChange(credential=credential, warning=warning)

    # === Helpers ===

    async def _execute(self, gateway: Gateway, command: str) -> CommandResult:
        executor = self.executor_factory(gateway)
        return await executor.execute(HostConnection.from_gateway(gateway), command)

    async def _remove_remote(
        self,
        gateway: Gateway,
        credential: DeviceCredential,
        action: str,
        operator: Optional[str],
    ) -> Optional[str]:
        """Best-effort peer removal; returns a warning instead of raising"""
        if gateway.status != GatewayStatus.ACTIVE.value:
            warning = f"Gateway {gateway.name} is {gateway.status}, peer was not removed remotely"
            output = ""
        else:
            result = await self._execute(gateway, GatewayCommands(gateway).remove_peer(credential.public_key))
            if _confirmed(result):
                return None
            warning = f"Gateway {gateway.name} did not remove the peer: {result.describe()}"
            output = result.describe()

        publish(
            EventTypes.REMOTE_SYNC_FAILED,
            {
                "gateway_id": gateway.id,
                "action": action,
                "credential_id": credential.id,
                "output": output,
            },
            source="credentials",
            operator=operator,
        )
        return warning

    def _lock_for(self, gateway: Gateway):
        if gateway.status == GatewayStatus.DEPLOYING.value:
            raise HostBusyError(f"Gateway {gateway.name} is deploying, try again later")
        return self.locks.get(gateway.id)

    @staticmethod
    def _require_active(gateway: Gateway) -> None:
        if gateway.status == GatewayStatus.DEPLOYING.value:
            raise HostBusyError(f"Gateway {gateway.name} is deploying, try again later")
        if gateway.status != GatewayStatus.ACTIVE.value:
            raise InvalidStateError(f"Gateway {gateway.name} is {gateway.status}, not active")

    @staticmethod
    def _check_transition(credential: DeviceCredential, target: CredentialStatus) -> None:
        current = CredentialStatus(credential.status)
        if target not in CREDENTIAL_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError("Credential", current.value, target.value)

    @staticmethod
    def _publish(event_type: str, credential: DeviceCredential, operator: Optional[str]) -> None:
        publish(
            event_type,
            credential_payload(
                credential.id,
                credential.gateway_id,
                credential.name,
                credential.tunnel_ip,
                credential.status,
            ),
            source="credentials",
            operator=operator,
        )


def _confirmed(result: CommandResult) -> bool:
    return result.ok and confirmed(result.output)


credential_manager = DeviceCredentialManager()
