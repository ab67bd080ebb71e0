# control-plane/core/ipam.py
import ipaddress
from typing import Optional

from sqlalchemy.orm import Session

from database.models import DeviceCredential, Gateway
from .exceptions import AddressPoolExhaustedError


def gateway_address(subnet: str) -> str:
    """The gateway itself always takes the first host address (.1)"""
    network = ipaddress.IPv4Network(subnet)
    return str(network.network_address + 1)


def used_tunnel_ips(db: Session, gateway_id: int) -> set[str]:
    """Addresses held by live (active or revoked) credentials of a gateway"""
    rows = (
        db.query(DeviceCredential.tunnel_ip)
        .filter(
            DeviceCredential.gateway_id == gateway_id,
            DeviceCredential.deleted_at.is_(None),
        )
        .all()
    )
    return {row.tunnel_ip for row in rows}


def next_free_ip(subnet: str, used: set[str]) -> Optional[str]:
    """Smallest host address that is neither reserved nor used"""
    network = ipaddress.IPv4Network(subnet)
    reserved = {gateway_address(subnet)}

    for ip in network.hosts():
        ip_str = str(ip)
        if ip_str not in used and ip_str not in reserved:
            return ip_str
    return None


def allocate_ip(db: Session, gateway: Gateway) -> str:
    """Next unused tunnel IP inside the gateway's subnet"""
    ip = next_free_ip(gateway.vpn_subnet, used_tunnel_ips(db, gateway.id))
    if ip is None:
        raise AddressPoolExhaustedError(
            f"No free tunnel address left in {gateway.vpn_subnet} on gateway {gateway.name}"
        )
    return ip
