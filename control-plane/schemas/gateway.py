# control-plane/schemas/gateway.py
"""
Pydantic Schemas for Gateway Hosts

Responses never include the host password or private key.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class GatewayCreate(BaseModel):
    """Schema for registering a gateway host"""
    name: Optional[str] = Field(None, max_length=128, description="Display name, defaults to the address")
    address: str = Field(..., min_length=1, max_length=255, description="Hostname or IP of the host")
    port: int = Field(22, ge=1, le=65535, description="SSH (or agent) port")
    username: str = Field(..., min_length=1, max_length=64)
    password: Optional[str] = Field(None, max_length=255)
    private_key: Optional[str] = Field(None, description="PEM/OpenSSH private key")
    vpn_subnet: Optional[str] = Field(None, description="Tunnel subnet, e.g. 10.8.0.0/24")
    vpn_port: Optional[int] = Field(None, ge=1, le=65535, description="UDP listen port")
    transport: str = Field("ssh", pattern="^(ssh|agent)$")

    @model_validator(mode="after")
    def check_secret(self):
        if not self.password and not self.private_key:
            raise ValueError("a password or private key is required")
        return self


class GatewayResponse(BaseModel):
    """Schema for gateway response"""
    id: int
    name: str
    address: str
    ssh_port: int
    username: str
    transport: str
    container_name: str
    vpn_port: int
    vpn_subnet: str
    server_public_key: Optional[str]
    status: str
    deploy_progress: int
    failed_step: Optional[str]
    failure_output: Optional[str]
    created_by: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class GatewayListResponse(BaseModel):
    gateways: List[GatewayResponse]
    total: int


class DeploymentResultResponse(BaseModel):
    """Outcome of one deploy() call"""
    gateway_id: int
    status: str
    succeeded: bool
    steps_run: List[str]
    failed_step: Optional[str] = None
    output: Optional[str] = None

    class Config:
        from_attributes = True


class DeploymentStepResponse(BaseModel):
    id: int
    step_index: int
    step_name: str
    success: bool
    output: Optional[str]
    operator: Optional[str]
    started_at: datetime
    finished_at: datetime

    class Config:
        from_attributes = True


class DeploymentLogResponse(BaseModel):
    gateway_id: int
    steps: List[DeploymentStepResponse]
