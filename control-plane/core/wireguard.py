# control-plane/core/wireguard.py
"""
WireGuard command templates for a gateway host

The gateway runs inside a docker container on the remote host. Every method
returns a shell command string for the Remote Command Executor; nothing here
talks to the network. All interpolated values go through shlex.quote, and
every mutating command ends with an explicit marker echo so that success is
never confused with "no output".

Commands are written to be safe to re-run:
- installation and container creation check for existing state first
- config files are overwritten, never appended
- the interface is brought up only when it is down
"""

import base64
import ipaddress
import re
import shlex
from dataclasses import dataclass
from typing import Dict, Optional

from config import settings
from database.models import Gateway

CONFIG_DIR = "/etc/wireguard"
HOST_DATA_ROOT = "/opt"
OK_MARKER = "ok"

_WG_KEY_RE = re.compile(r"^[A-Za-z0-9+/]{42}[AEIMQUYcgkosw048]=$")


def is_wg_key(value: Optional[str]) -> bool:
    """True for a base64-encoded 32 byte WireGuard key"""
    return bool(value) and bool(_WG_KEY_RE.match(value.strip()))


@dataclass(frozen=True)
class PeerCounters:
    """Cumulative transfer counters of one peer, seen from the device"""
    public_key: str
    bytes_sent: int
    bytes_received: int
    latest_handshake: Optional[int] = None


def parse_dump(output: str) -> Dict[str, PeerCounters]:
    """
    Parse `wg show <iface> dump`

    First line is the interface (private key, public key, port, fwmark) and is
    skipped. Peer lines are tab separated:
    public-key, preshared-key, endpoint, allowed-ips, latest-handshake,
    transfer-rx, transfer-tx, persistent-keepalive.

    transfer-rx is what the gateway received, i.e. what the device sent.
    Lines that do not parse are ignored.
    """
    peers: Dict[str, PeerCounters] = {}
    lines = output.strip().split('\n')

    for line in lines[1:]:
        parts = line.strip().split('\t')
        if len(parts) < 7:
            continue
        try:
            transfer_rx = int(parts[5])
            transfer_tx = int(parts[6])
            handshake = int(parts[4]) if parts[4] and parts[4] != "0" else None
        except ValueError:
            continue

        peers[parts[0]] = PeerCounters(
            public_key=parts[0],
            bytes_sent=transfer_rx,
            bytes_received=transfer_tx,
            latest_handshake=handshake,
        )

    return peers


class GatewayCommands:
    """Shell command builders for one gateway container"""

    def __init__(self, gateway: Gateway, interface: Optional[str] = None):
        self.container = gateway.container_name
        self.interface = interface or settings.VPN_INTERFACE
        self.subnet = ipaddress.IPv4Network(gateway.vpn_subnet)
        self.vpn_port = gateway.vpn_port
        self.data_dir = f"{HOST_DATA_ROOT}/{gateway.container_name}"

    @property
    def config_file(self) -> str:
        return f"{CONFIG_DIR}/{self.interface}.conf"

    @property
    def peers_file(self) -> str:
        return f"{CONFIG_DIR}/peers.conf"

    def in_container(self, script: str) -> str:
        return f"docker exec {shlex.quote(self.container)} sh -c {shlex.quote(script)}"

    # === Deployment ===

    def install_docker(self) -> str:
        return (
            "if command -v docker >/dev/null 2>&1; then echo present; "
            "else curl -fsSL https://get.docker.com | sh >/dev/null 2>&1 "
            "&& command -v docker >/dev/null 2>&1 && echo installed; fi"
        )

    def bootstrap_container(self, image: Optional[str] = None) -> str:
        image = image or settings.GATEWAY_IMAGE
        name = shlex.quote(self.container)
        port = f"{self.vpn_port}:{self.vpn_port}/udp"
        run = (
            f"docker run -d --name {name} --restart unless-stopped "
            "--cap-add NET_ADMIN --cap-add SYS_MODULE "
            "--sysctl net.ipv4.ip_forward=1 --sysctl net.ipv4.conf.all.src_valid_mark=1 "
            f"-p {shlex.quote(port)} -v {shlex.quote(self.data_dir)}:{CONFIG_DIR} "
            f"--entrypoint sleep {shlex.quote(image)} infinity >/dev/null"
        )
        keygen = self.in_container(
            f"umask 077; test -s {CONFIG_DIR}/server.key || wg genkey > {CONFIG_DIR}/server.key"
        )
        return (
            f"mkdir -p {shlex.quote(self.data_dir)} "
            f"&& (docker inspect {name} >/dev/null 2>&1 || {run}) "
            f"&& docker start {name} >/dev/null "
            f"&& {keygen} && echo {OK_MARKER}"
        )

    def render_interface_config(self) -> str:
        gateway_ip = self.subnet.network_address + 1
        subnet = str(self.subnet)
        nat = f"POSTROUTING -s {subnet} -o eth0 -j MASQUERADE"
        lines = [
            "[Interface]",
            f"Address = {gateway_ip}/{self.subnet.prefixlen}",
            f"ListenPort = {self.vpn_port}",
            f"PostUp = wg set %i private-key {CONFIG_DIR}/server.key",
            f"PostUp = test -f {self.peers_file} && wg addconf %i {self.peers_file} || true",
            f"PostUp = iptables -t nat -C {nat} 2>/dev/null || iptables -t nat -A {nat}",
            f"PostDown = iptables -t nat -D {nat} || true",
        ]
        return "\n".join(lines) + "\n"

    def write_interface_config(self) -> str:
        encoded = base64.b64encode(self.render_interface_config().encode()).decode()
        return self.in_container(
            f"umask 077; echo {encoded} | base64 -d > {self.config_file} && echo {OK_MARKER}"
        )

    def bring_up_interface(self) -> str:
        iface = shlex.quote(self.interface)
        return self.in_container(
            f"wg show {iface} >/dev/null 2>&1 || wg-quick up {iface} >/dev/null 2>&1; "
            f"wg show {iface} >/dev/null 2>&1 && echo {OK_MARKER}"
        )

    def show_public_key(self) -> str:
        return self.in_container(f"wg show {shlex.quote(self.interface)} public-key")

    # === Peers ===

    def _persist_peers(self) -> str:
        return (
            f"wg showconf {shlex.quote(self.interface)} "
            f"| awk '/^\\[Peer\\]/{{p=1}} p' > {self.peers_file}"
        )

    def add_peer(self, public_key: str, tunnel_ip: str, preshared_key: Optional[str] = None) -> str:
        iface = shlex.quote(self.interface)
        set_cmd = f"wg set {iface} peer {shlex.quote(public_key)} allowed-ips {shlex.quote(tunnel_ip + '/32')}"
        if preshared_key:
            set_cmd = f"printf %s {shlex.quote(preshared_key)} | {set_cmd} preshared-key /dev/stdin"
        return self.in_container(f"umask 077; {set_cmd} && {self._persist_peers()} && echo {OK_MARKER}")

    def remove_peer(self, public_key: str) -> str:
        iface = shlex.quote(self.interface)
        return self.in_container(
            f"umask 077; wg set {iface} peer {shlex.quote(public_key)} remove "
            f"&& {self._persist_peers()} && echo {OK_MARKER}"
        )

    def dump(self) -> str:
        return self.in_container(f"wg show {shlex.quote(self.interface)} dump")


def confirmed(output: str) -> bool:
    """A mutating command reached its final marker"""
    return output.strip().splitlines()[-1:] == [OK_MARKER]
