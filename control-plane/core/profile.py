# control-plane/core/profile.py
"""
Connection Profile rendering

Turns a device credential into the artifact an end user imports into a VPN
client: a wg-quick style config and the same text as a QR code (SVG, base64).
"""

import base64
import io
import logging
from dataclasses import dataclass
from typing import List, Optional

import qrcode
import qrcode.image.svg

from config import settings
from database.models import DeviceCredential, Gateway

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_IPS = ["0.0.0.0/0", "::/0"]


@dataclass(frozen=True)
class ConnectionProfile:
    config_text: str
    qr_svg_base64: str
    filename: str


class ProfileRenderer:
    """
    Builds client configuration for one device

    The rendering is deterministic for a given credential and gateway, so a
    profile can be re-rendered at any time instead of being stored.
    """

    def __init__(
        self,
        dns: Optional[List[str]] = None,
        allowed_ips: Optional[List[str]] = None,
        keepalive: Optional[int] = None,
    ):
        self.dns = dns if dns is not None else [s.strip() for s in settings.CLIENT_DNS.split(",") if s.strip()]
        self.allowed_ips = allowed_ips or DEFAULT_ALLOWED_IPS
        self.keepalive = keepalive if keepalive is not None else settings.CLIENT_KEEPALIVE

    def build_config(self, credential: DeviceCredential, gateway: Gateway) -> str:
        lines = []

        # [Interface] section, the device side
        lines.append("[Interface]")
        lines.append(f"PrivateKey = {credential.private_key}")
        lines.append(f"Address = {credential.tunnel_ip}/32")
        if self.dns:
            lines.append(f"DNS = {', '.join(self.dns)}")

        # [Peer] section, the gateway
        lines.append("")
        lines.append("[Peer]")
        lines.append(f"PublicKey = {gateway.server_public_key}")
        if credential.preshared_key:
            lines.append(f"PresharedKey = {credential.preshared_key}")
        lines.append(f"AllowedIPs = {', '.join(self.allowed_ips)}")
        lines.append(f"Endpoint = {gateway.endpoint}")
        if self.keepalive:
            lines.append(f"PersistentKeepalive = {self.keepalive}")

        return "\n".join(lines) + "\n"

    def render_qr(self, text: str) -> str:
        """SVG QR code of text, base64 encoded"""
        image = qrcode.make(text, image_factory=qrcode.image.svg.SvgPathImage)
        buffer = io.BytesIO()
        image.save(buffer)
        return base64.b64encode(buffer.getvalue()).decode()

    def render(self, credential: DeviceCredential, gateway: Gateway) -> ConnectionProfile:
        config_text = self.build_config(credential, gateway)
        return ConnectionProfile(
            config_text=config_text,
            qr_svg_base64=self.render_qr(config_text),
            filename=f"{_safe_name(credential.name)}.conf",
        )


def _safe_name(name: str) -> str:
    cleaned = "".join(c if c.isalnum() or c in "-_" else "_" for c in name.strip())
    return cleaned or "device"


profile_renderer = ProfileRenderer()
