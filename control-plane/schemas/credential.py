# control-plane/schemas/credential.py
"""
Pydantic Schemas for Device Credentials

Key material only leaves the API through ProfileResponse.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class CredentialCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128, description="Device name, e.g. 'phone1'")


class CredentialResponse(BaseModel):
    id: int
    gateway_id: int
    name: str
    public_key: str
    tunnel_ip: str
    status: str
    created_by: Optional[str]
    created_at: datetime
    last_seen_at: Optional[datetime]
    revoked_at: Optional[datetime]

    class Config:
        from_attributes = True


class CredentialListResponse(BaseModel):
    credentials: List[CredentialResponse]
    total: int


class ProfileResponse(BaseModel):
    """Client configuration and its QR code (SVG, base64)"""
    config_text: str
    qr_svg_base64: str
    filename: str

    class Config:
        from_attributes = True


class CredentialCreatedResponse(BaseModel):
    credential: CredentialResponse
    profile: ProfileResponse


class CredentialChangeResponse(BaseModel):
    """Result of revoke/restore/delete; warning set when the host did not follow"""
    credential: CredentialResponse
    warning: Optional[str] = None
