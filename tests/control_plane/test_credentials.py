# tests/control_plane/test_credentials.py
"""
Unit Tests for the Device Credential Manager
Tunnel IP allocation, remote-first ordering and revoke/restore semantics
"""

import base64

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from core.credentials import generate_keypair, generate_preshared_key
from core.domain_events import EventTypes
from core.events import event_bus
from core.exceptions import (
    AddressPoolExhaustedError,
    HostBusyError,
    HostUnreachableError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from core.ipam import next_free_ip
from core.wireguard import is_wg_key
from database.models import CredentialStatus, DeviceCredential, GatewayStatus
from fakes import SERVER_PUBLIC_KEY, failed


class TestKeyMaterial:
    def test_keypair_is_consistent(self):
        private_key, public_key = generate_keypair()

        assert is_wg_key(private_key)
        assert is_wg_key(public_key)
        restored = X25519PrivateKey.from_private_bytes(base64.b64decode(private_key))
        derived = restored.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        assert base64.b64encode(derived).decode() == public_key

    def test_keys_are_unique(self):
        assert generate_keypair() != generate_keypair()
        assert generate_preshared_key() != generate_preshared_key()
        assert len(base64.b64decode(generate_preshared_key())) == 32


class TestAddressPool:
    def test_skips_network_and_gateway_address(self):
        assert next_free_ip("10.8.0.0/24", set()) == "10.8.0.2"

    def test_smallest_free_address(self):
        assert next_free_ip("10.8.0.0/24", {"10.8.0.2", "10.8.0.4"}) == "10.8.0.3"

    def test_full_pool(self):
        assert next_free_ip("10.8.0.0/30", {"10.8.0.2"}) is None


class TestCreate:
    @pytest.mark.asyncio
    async def test_allocates_sequential_addresses(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()

        phone1, _ = await credential_mgr.create(db, gateway.id, "phone1")
        phone2, _ = await credential_mgr.create(db, gateway.id, "phone2")

        assert phone1.tunnel_ip == "10.8.0.2"
        assert phone2.tunnel_ip == "10.8.0.3"
        assert phone1.status == CredentialStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_registers_peer_before_writing(self, db, credential_mgr, healthy_executor, make_gateway):
        gateway = make_gateway()

        credential, _ = await credential_mgr.create(db, gateway.id, "laptop", operator="alice")

        add_calls = healthy_executor.calls_matching("allowed-ips")
        assert len(add_calls) == 1
        assert credential.public_key in add_calls[0]
        assert "10.8.0.2/32" in add_calls[0]
        assert credential.created_by == "alice"

    @pytest.mark.asyncio
    async def test_returns_profile(self, db, credential_mgr, make_gateway):
        gateway = make_gateway(address="203.0.113.10")

        credential, profile = await credential_mgr.create(db, gateway.id, "phone1")

        assert f"PrivateKey = {credential.private_key}" in profile.config_text
        assert "Address = 10.8.0.2/32" in profile.config_text
        assert f"PublicKey = {SERVER_PUBLIC_KEY}" in profile.config_text
        assert f"PresharedKey = {credential.preshared_key}" in profile.config_text
        assert "Endpoint = 203.0.113.10:51820" in profile.config_text
        assert b"svg" in base64.b64decode(profile.qr_svg_base64)
        assert profile.filename == "phone1.conf"

    @pytest.mark.asyncio
    async def test_remote_failure_leaves_no_row(self, db, credential_mgr, healthy_executor, make_gateway):
        healthy_executor.on("allowed-ips", failed("connection failed: timed out"))
        gateway = make_gateway()

        with pytest.raises(HostUnreachableError) as exc_info:
            await credential_mgr.create(db, gateway.id, "phone1")

        assert exc_info.value.output == "connection failed: timed out"
        assert db.query(DeviceCredential).count() == 0
        assert event_bus.get_history(EventTypes.CREDENTIAL_CREATED) == []

    @pytest.mark.asyncio
    async def test_unconfirmed_output_is_failure(self, db, credential_mgr, healthy_executor, make_gateway):
        healthy_executor.on("allowed-ips", failed("exit status 1: Unable to modify interface"))
        gateway = make_gateway()

        with pytest.raises(HostUnreachableError):
            await credential_mgr.create(db, gateway.id, "phone1")

        assert db.query(DeviceCredential).count() == 0

    @pytest.mark.asyncio
    async def test_gateway_must_be_active(self, db, credential_mgr, make_gateway):
        gateway = make_gateway(status=GatewayStatus.FAILED)

        with pytest.raises(InvalidStateError):
            await credential_mgr.create(db, gateway.id, "phone1")

    @pytest.mark.asyncio
    async def test_deploying_gateway_is_busy(self, db, credential_mgr, make_gateway):
        gateway = make_gateway(status=GatewayStatus.DEPLOYING)

        with pytest.raises(HostBusyError):
            await credential_mgr.create(db, gateway.id, "phone1")

    @pytest.mark.asyncio
    async def test_name_required(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()

        with pytest.raises(ValidationFailedError):
            await credential_mgr.create(db, gateway.id, "   ")

    @pytest.mark.asyncio
    async def test_pool_exhausted(self, db, credential_mgr, make_gateway):
        gateway = make_gateway(vpn_subnet="10.9.0.0/30")
        await credential_mgr.create(db, gateway.id, "only")

        with pytest.raises(AddressPoolExhaustedError):
            await credential_mgr.create(db, gateway.id, "one-too-many")

    @pytest.mark.asyncio
    async def test_event_carries_no_keys(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()

        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")

        payload = event_bus.get_history(EventTypes.CREDENTIAL_CREATED)[0].payload
        assert payload["tunnel_ip"] == "10.8.0.2"
        assert credential.private_key not in str(payload)
        assert credential.preshared_key not in str(payload)


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_removes_peer(self, db, credential_mgr, healthy_executor, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")

        change = await credential_mgr.revoke(db, credential.id)

        assert change.warning is None
        assert change.credential.status == CredentialStatus.REVOKED.value
        assert change.credential.revoked_at is not None
        assert len(healthy_executor.calls_matching("remove")) == 1

    @pytest.mark.asyncio
    async def test_remote_failure_still_revokes_locally(self, db, credential_mgr, healthy_executor, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")
        healthy_executor.on("remove", failed("connection failed: host down"))

        change = await credential_mgr.revoke(db, credential.id)

        assert change.credential.status == CredentialStatus.REVOKED.value
        assert "host down" in change.warning
        sync_events = event_bus.get_history(EventTypes.REMOTE_SYNC_FAILED)
        assert sync_events[0].payload["action"] == "revoke"
        assert sync_events[0].payload["credential_id"] == credential.id

    @pytest.mark.asyncio
    async def test_revoke_twice(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")
        await credential_mgr.revoke(db, credential.id)

        with pytest.raises(InvalidTransitionError):
            await credential_mgr.revoke(db, credential.id)

    @pytest.mark.asyncio
    async def test_revoked_keeps_address(self, db, credential_mgr, make_gateway):
        """A new device never gets the address of a revoked one"""
        gateway = make_gateway()
        phone1, _ = await credential_mgr.create(db, gateway.id, "phone1")
        await credential_mgr.revoke(db, phone1.id)

        phone2, _ = await credential_mgr.create(db, gateway.id, "phone2")

        assert phone2.tunnel_ip == "10.8.0.3"
        assert phone2.tunnel_ip != phone1.tunnel_ip


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_re_adds_peer(self, db, credential_mgr, healthy_executor, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")
        await credential_mgr.revoke(db, credential.id)
        healthy_executor.calls.clear()

        change = await credential_mgr.restore(db, credential.id)

        assert change.credential.status == CredentialStatus.ACTIVE.value
        assert change.credential.revoked_at is None
        add_calls = healthy_executor.calls_matching("allowed-ips")
        assert credential.public_key in add_calls[0]
        assert "10.8.0.2/32" in add_calls[0]

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_revoked(self, db, credential_mgr, healthy_executor, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")
        await credential_mgr.revoke(db, credential.id)
        healthy_executor.on("allowed-ips", failed())

        with pytest.raises(HostUnreachableError):
            await credential_mgr.restore(db, credential.id)

        db.refresh(credential)
        assert credential.status == CredentialStatus.REVOKED.value

    @pytest.mark.asyncio
    async def test_restore_active_rejected(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")

        with pytest.raises(InvalidTransitionError):
            await credential_mgr.restore(db, credential.id)

    @pytest.mark.asyncio
    async def test_restore_deleted_not_found(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")
        await credential_mgr.revoke(db, credential.id)
        await credential_mgr.delete(db, credential.id)

        with pytest.raises(NotFoundError):
            await credential_mgr.restore(db, credential.id)


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_releases_address(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()
        phone1, _ = await credential_mgr.create(db, gateway.id, "phone1")
        await credential_mgr.create(db, gateway.id, "phone2")

        change = await credential_mgr.delete(db, phone1.id)
        tablet, _ = await credential_mgr.create(db, gateway.id, "tablet")

        assert change.warning is None
        assert change.credential.deleted_at is not None
        assert tablet.tunnel_ip == "10.8.0.2"

    @pytest.mark.asyncio
    async def test_delete_warns_on_remote_failure(self, db, credential_mgr, healthy_executor, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")
        healthy_executor.on("remove", failed())

        change = await credential_mgr.delete(db, credential.id)

        assert change.warning is not None
        assert change.credential.deleted_at is not None

    @pytest.mark.asyncio
    async def test_deleted_hidden_from_queries(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()
        credential, _ = await credential_mgr.create(db, gateway.id, "phone1")
        await credential_mgr.delete(db, credential.id)

        assert credential_mgr.list_for_gateway(db, gateway.id) == []
        with pytest.raises(NotFoundError):
            credential_mgr.get(db, credential.id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_by_status(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()
        phone1, _ = await credential_mgr.create(db, gateway.id, "phone1")
        phone2, _ = await credential_mgr.create(db, gateway.id, "phone2")
        await credential_mgr.revoke(db, phone1.id)

        assert [c.id for c in credential_mgr.list_for_gateway(db, gateway.id)] == [phone1.id, phone2.id]
        assert [c.id for c in credential_mgr.list_for_gateway(db, gateway.id, status="active")] == [phone2.id]

    @pytest.mark.asyncio
    async def test_profile_on_demand(self, db, credential_mgr, make_gateway):
        gateway = make_gateway()
        credential, created_profile = await credential_mgr.create(db, gateway.id, "phone1")

        profile = credential_mgr.profile(db, credential.id)

        assert profile.config_text == created_profile.config_text
