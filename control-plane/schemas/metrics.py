# control-plane/schemas/metrics.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class HostMetricResponse(BaseModel):
    collected_at: datetime
    cpu_percent: Optional[float]
    ram_used_mb: Optional[int]
    ram_total_mb: Optional[int]
    disk_used_gb: Optional[float]
    disk_total_gb: Optional[float]
    network_rx_mbps: Optional[float]
    network_tx_mbps: Optional[float]

    class Config:
        from_attributes = True


class DeviceMetricResponse(BaseModel):
    collected_at: datetime
    bytes_sent: int
    bytes_received: int
    upload_bps: float
    download_bps: float
    counter_reset: bool

    class Config:
        from_attributes = True


class HostMetricsResponse(BaseModel):
    gateway_id: int
    window_hours: int
    samples: List[HostMetricResponse]


class DeviceMetricsResponse(BaseModel):
    credential_id: int
    window_hours: int
    samples: List[DeviceMetricResponse]


class CollectionResponse(BaseModel):
    """Result of an on-demand sampling pass"""
    gateway_id: int
    host_sample: HostMetricResponse
    device_samples: int
