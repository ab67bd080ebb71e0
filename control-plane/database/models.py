# control-plane/database/models.py
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GatewayStatus(str, enum.Enum):
    REGISTERED = "registered"
    DEPLOYING = "deploying"
    ACTIVE = "active"
    FAILED = "failed"
    DELETED = "deleted"


class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class Transport(str, enum.Enum):
    SSH = "ssh"
    AGENT = "agent"


class Gateway(Base):
    __tablename__ = "gateways"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), nullable=False)
    address = Column(String(255), nullable=False)
    ssh_port = Column(Integer, nullable=False, default=22)
    username = Column(String(64), nullable=False)
    password = Column(String(255), nullable=True)
    private_key = Column(Text, nullable=True)
    transport = Column(String(16), nullable=False, default=Transport.SSH.value)

    container_name = Column(String(64), nullable=False, unique=True)
    vpn_port = Column(Integer, nullable=False, default=51820)
    vpn_subnet = Column(String(43), nullable=False)
    server_public_key = Column(String(64), nullable=True)

    status = Column(String(16), nullable=False, default=GatewayStatus.REGISTERED.value, index=True)
    deploy_progress = Column(Integer, nullable=False, default=0)  # completed steps
    failed_step = Column(String(64), nullable=True)
    failure_output = Column(Text, nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    credentials = relationship("DeviceCredential", back_populates="gateway")

    __table_args__ = (
        # Soft-deleted rows free their address for re-registration
        Index(
            "uq_gateway_address_port_live",
            "address", "ssh_port",
            unique=True,
            sqlite_where=deleted_at.is_(None),
            postgresql_where=deleted_at.is_(None),
        ),
    )

    @property
    def endpoint(self) -> str:
        return f"{self.address}:{self.vpn_port}"


class DeviceCredential(Base):
    __tablename__ = "device_credentials"

    id = Column(Integer, primary_key=True, index=True)
    gateway_id = Column(Integer, ForeignKey("gateways.id"), nullable=False, index=True)
    name = Column(String(128), nullable=False)

    public_key = Column(String(64), nullable=False, unique=True)
    private_key = Column(String(64), nullable=False)
    preshared_key = Column(String(64), nullable=True)
    tunnel_ip = Column(String(45), nullable=False)

    status = Column(String(16), nullable=False, default=CredentialStatus.ACTIVE.value, index=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    gateway = relationship("Gateway", back_populates="credentials")

    __table_args__ = (
        Index(
            "uq_credential_tunnel_ip_live",
            "gateway_id", "tunnel_ip",
            unique=True,
            sqlite_where=deleted_at.is_(None),
            postgresql_where=deleted_at.is_(None),
        ),
    )


class HostMetricSample(Base):
    __tablename__ = "host_metric_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway_id = Column(Integer, ForeignKey("gateways.id"), nullable=False)
    collected_at = Column(DateTime, nullable=False, default=utcnow)

    cpu_percent = Column(Float)
    ram_used_mb = Column(Integer)
    ram_total_mb = Column(Integer)
    disk_used_gb = Column(Float)
    disk_total_gb = Column(Float)
    network_rx_mbps = Column(Float)
    network_tx_mbps = Column(Float)

    __table_args__ = (
        Index("ix_host_metric_gateway_ts", "gateway_id", "collected_at"),
    )


class DeviceMetricSample(Base):
    __tablename__ = "device_metric_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(Integer, ForeignKey("device_credentials.id"), nullable=False)
    collected_at = Column(DateTime, nullable=False, default=utcnow)

    # Cumulative counters, from the device's point of view
    bytes_sent = Column(BigInteger, nullable=False)
    bytes_received = Column(BigInteger, nullable=False)
    upload_bps = Column(Float, nullable=False, default=0.0)
    download_bps = Column(Float, nullable=False, default=0.0)
    counter_reset = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_device_metric_credential_ts", "credential_id", "collected_at"),
    )


class DeploymentStepLog(Base):
    """Append-only outcome of each deployment step"""
    __tablename__ = "deployment_step_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway_id = Column(Integer, ForeignKey("gateways.id"), nullable=False, index=True)
    step_index = Column(Integer, nullable=False)
    step_name = Column(String(64), nullable=False)
    success = Column(Boolean, nullable=False)
    output = Column(Text, nullable=True)
    operator = Column(String(64), nullable=True)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=False)


class Setting(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    namespace = Column(String(64), nullable=False)
    key = Column(String(128), nullable=False)
    value = Column(Text, nullable=True)  # JSON encoded
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("namespace", "key", name="uq_setting_namespace_key"),
    )
