# control-plane/config.py
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./gateway_fleet.db"

    # Operator authentication
    ADMIN_SECRET: str = "secret-admin-token"
    JWT_SECRET: Optional[str] = None
    JWT_ISSUER: str = "gateway-fleet"
    JWT_AUDIENCE: str = "gateway-fleet-api"
    JWT_TTL_SECONDS: int = 2592000  # 30 days

    # Gateway defaults applied at registration
    DEFAULT_VPN_SUBNET: str = "10.8.0.0/24"
    DEFAULT_VPN_PORT: int = 51820
    VPN_INTERFACE: str = "wg0"
    GATEWAY_IMAGE: str = "linuxserver/wireguard:latest"
    CONTAINER_PREFIX: str = "vpngw"
    CLIENT_DNS: str = "1.1.1.1, 1.0.0.1"
    CLIENT_KEEPALIVE: int = 25

    # Remote execution
    REMOTE_COMMAND_TIMEOUT: float = 120.0
    SSH_CONNECT_TIMEOUT: float = 15.0

    # Metrics
    NETWORK_SAMPLE_INTERVAL: float = 1.0
    METRICS_RETENTION_HOURS: int = 24

    LOG_LEVEL: str = "INFO"


settings = Settings()
