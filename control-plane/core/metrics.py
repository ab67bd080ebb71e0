# control-plane/core/metrics.py
"""
Metrics Sampler

Host pass: CPU, RAM, disk and network throughput of a gateway host, one
probe command each. A failed or unparsable probe becomes a null field; the
sample row is stored regardless.

Device pass: one `wg show <iface> dump` per host, then per active credential
a rate against its previous sample:

    rate (bit/s) = (curr_bytes - prev_bytes) * 8 / elapsed_seconds

A counter that went backwards (interface restart) yields 0 and flags the
sample with counter_reset.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from config import settings
from database.models import (
    CredentialStatus,
    DeviceCredential,
    DeviceMetricSample,
    Gateway,
    GatewayStatus,
    HostMetricSample,
    utcnow,
)
from .domain_events import EventTypes, counter_reset_payload
from .events import publish
from .exceptions import (
    FleetError,
    HostBusyError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from .gateway_registry import GatewayRegistry, gateway_registry
from .host_locks import HostLocks, host_locks
from .remote import ExecutorFactory, HostConnection, RemoteExecutor, executor_for
from .wireguard import GatewayCommands, PeerCounters, parse_dump

logger = logging.getLogger(__name__)


CPU_PROBE = (
    "top -bn1 | grep 'Cpu(s)' "
    "| sed 's/.*, *\\([0-9.]*\\)%* id.*/\\1/' "
    "| awk '{print 100 - $1}'"
)

# field -> (command, parser)
HOST_PROBES: Dict[str, Tuple[str, Callable[[str], float]]] = {
    "cpu_percent": (CPU_PROBE, float),
    "ram_used_mb": ("free -m | grep Mem | awk '{print $3}'", int),
    "ram_total_mb": ("free -m | grep Mem | awk '{print $2}'", int),
    "disk_used_gb": ("df -BG / | tail -1 | awk '{print $3}' | sed 's/G//'", float),
    "disk_total_gb": ("df -BG / | tail -1 | awk '{print $2}' | sed 's/G//'", float),
}

# rx and tx byte counters of the default-route interface, one per line
NETWORK_COUNTERS_PROBE = (
    "IFACE=$(ip route | grep default | awk '{print $5}' | head -1); "
    "cat /sys/class/net/$IFACE/statistics/rx_bytes /sys/class/net/$IFACE/statistics/tx_bytes"
)


@dataclass(frozen=True)
class RateResult:
    rate: float
    counter_reset: bool = False


def compute_rate(
    prev_bytes: Optional[int],
    prev_time: Optional[datetime],
    curr_bytes: int,
    curr_time: datetime,
) -> RateResult:
    """Bits per second between two cumulative counter readings"""
    if prev_bytes is None or prev_time is None:
        return RateResult(0.0)

    elapsed = (curr_time - prev_time).total_seconds()
    if elapsed <= 0:
        return RateResult(0.0)

    delta = curr_bytes - prev_bytes
    if delta < 0:
        return RateResult(0.0, counter_reset=True)

    return RateResult(round(delta * 8 / elapsed, 2))


def _parse(output: str, parser: Callable[[str], float]) -> Optional[float]:
    try:
        return parser(output.strip().split()[0])
    except (ValueError, IndexError):
        return None


@dataclass
class CollectionResult:
    gateway_id: int
    host_sample: HostMetricSample
    device_samples: List[DeviceMetricSample] = field(default_factory=list)


class MetricsSampler:
    """Periodic host and device sampling, retention and reads"""

    def __init__(
        self,
        executor_factory: ExecutorFactory = executor_for,
        registry: GatewayRegistry = gateway_registry,
        locks: HostLocks = host_locks,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        network_interval: Optional[float] = None,
    ):
        self.executor_factory = executor_factory
        self.registry = registry
        self.locks = locks
        self.clock = clock
        self.sleep = sleep
        self.network_interval = (
            network_interval if network_interval is not None else settings.NETWORK_SAMPLE_INTERVAL
        )

    # === Host pass ===

    async def _probe(self, executor: RemoteExecutor, gateway: Gateway, command: str) -> Optional[str]:
        result = await executor.execute(HostConnection.from_gateway(gateway), command)
        return result.output if result.ok else None

    async def read_network_counters(
        self,
        gateway: Gateway,
        executor: Optional[RemoteExecutor] = None,
    ) -> Optional[Tuple[int, int]]:
        """Cumulative (rx_bytes, tx_bytes) of the host's default interface"""
        executor = executor or self.executor_factory(gateway)
        output = await self._probe(executor, gateway, NETWORK_COUNTERS_PROBE)
        if output is None:
            return None
        values = output.split()
        if len(values) < 2:
            return None
        try:
            return int(values[0]), int(values[1])
        except ValueError:
            return None

    async def sample_network_throughput(
        self,
        gateway: Gateway,
        executor: Optional[RemoteExecutor] = None,
    ) -> Tuple[Optional[float], Optional[float]]:
        """
        Two-point throughput measurement: read, wait one interval, read again

        Returns (rx_mbps, tx_mbps); both None when either read failed.
        """
        executor = executor or self.executor_factory(gateway)
        first = await self.read_network_counters(gateway, executor)
        if first is None:
            return None, None

        await self.sleep(self.network_interval)

        second = await self.read_network_counters(gateway, executor)
        if second is None:
            return None, None

        rates = []
        for before, after in zip(first, second):
            mbps = (after - before) * 8 / self.network_interval / 1_000_000
            rates.append(round(max(mbps, 0.0), 2))
        return rates[0], rates[1]

    async def collect(self, db: Session, gateway: Gateway) -> HostMetricSample:
        """Run every host probe and persist one HostMetricSample"""
        executor = self.executor_factory(gateway)
        values: Dict[str, Optional[float]] = {}

        for field_name, (command, parser) in HOST_PROBES.items():
            output = await self._probe(executor, gateway, command)
            values[field_name] = _parse(output, parser) if output is not None else None
            if values[field_name] is None:
                logger.debug(f"{gateway.name}: probe {field_name} gave no value")

        rx_mbps, tx_mbps = await self.sample_network_throughput(gateway, executor)

        sample = HostMetricSample(
            gateway_id=gateway.id,
            collected_at=self.clock(),
            network_rx_mbps=rx_mbps,
            network_tx_mbps=tx_mbps,
            **values,
        )
        db.add(sample)
        db.commit()
        db.refresh(sample)
        return sample

    # === Device pass ===

    async def read_device_counters(self, gateway: Gateway) -> Optional[Dict[str, PeerCounters]]:
        """All peer counters of a host from a single dump; None when the call failed"""
        executor = self.executor_factory(gateway)
        result = await executor.execute(HostConnection.from_gateway(gateway), GatewayCommands(gateway).dump())
        if not result.ok:
            logger.warning(f"{gateway.name}: peer dump failed: {result.describe()}")
            return None
        return parse_dump(result.output)

    async def collect_devices(self, db: Session, gateway: Gateway) -> List[DeviceMetricSample]:
        counters = await self.read_device_counters(gateway)
        if counters is None:
            return []

        now = self.clock()
        credentials = (
            db.query(DeviceCredential)
            .filter(
                DeviceCredential.gateway_id == gateway.id,
                DeviceCredential.status == CredentialStatus.ACTIVE.value,
                DeviceCredential.deleted_at.is_(None),
            )
            .order_by(DeviceCredential.id)
            .all()
        )

        samples = []
        resets = []
        for credential in credentials:
            peer = counters.get(credential.public_key)
            if peer is None:
                continue

            previous = (
                db.query(DeviceMetricSample)
                .filter(
                    DeviceMetricSample.credential_id == credential.id,
                    DeviceMetricSample.collected_at < now,
                )
                .order_by(DeviceMetricSample.collected_at.desc(), DeviceMetricSample.id.desc())
                .first()
            )
            prev_sent = previous.bytes_sent if previous else None
            prev_received = previous.bytes_received if previous else None
            prev_time = previous.collected_at if previous else None

            upload = compute_rate(prev_sent, prev_time, peer.bytes_sent, now)
            download = compute_rate(prev_received, prev_time, peer.bytes_received, now)

            sample = DeviceMetricSample(
                credential_id=credential.id,
                collected_at=now,
                bytes_sent=peer.bytes_sent,
                bytes_received=peer.bytes_received,
                upload_bps=upload.rate,
                download_bps=download.rate,
                counter_reset=upload.counter_reset or download.counter_reset,
            )
            db.add(sample)
            samples.append(sample)

            credential.last_seen_at = now

            if upload.counter_reset:
                resets.append(counter_reset_payload(credential.id, "upload", prev_sent, peer.bytes_sent))
            if download.counter_reset:
                resets.append(counter_reset_payload(credential.id, "download", prev_received, peer.bytes_received))

        db.commit()
        for payload in resets:
            publish(EventTypes.COUNTER_RESET, payload, source="metrics")

        logger.info(f"{gateway.name}: stored {len(samples)} device samples")
        return samples

    # === Jobs ===

    async def collect_now(self, db: Session, gateway_id: int) -> CollectionResult:
        """
        Host pass followed by device pass, under the host lock

        Raises:
            HostBusyError: gateway is deploying
            InvalidStateError: gateway is not active
        """
        gateway = self.registry.get(db, gateway_id)
        _require_active(gateway)

        async with self.locks.get(gateway.id):
            db.refresh(gateway)
            _require_active(gateway)
            host_sample = await self.collect(db, gateway)
            device_samples = await self.collect_devices(db, gateway)

        return CollectionResult(gateway_id=gateway.id, host_sample=host_sample, device_samples=device_samples)

    async def collect_all(self, db: Session) -> Dict[int, Optional[CollectionResult]]:
        """Sample every active gateway concurrently; a failing host maps to None"""
        gateways = self.registry.list(db, status=GatewayStatus.ACTIVE.value)
        results = await asyncio.gather(*(self._collect_logged(db, gw) for gw in gateways))
        return {gw.id: result for gw, result in zip(gateways, results)}

    async def _collect_logged(self, db: Session, gateway: Gateway) -> Optional[CollectionResult]:
        try:
            return await self.collect_now(db, gateway.id)
        except FleetError as e:
            logger.warning(f"Skipped sampling of {gateway.name}: {e.message}")
        except Exception as e:
            db.rollback()
            logger.error(f"Sampling of {gateway.name} failed: {e}", exc_info=True)
        return None

    def purge_expired(self, db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete samples collected strictly before now - retention"""
        now = now or self.clock()
        cutoff = now - timedelta(hours=settings.METRICS_RETENTION_HOURS)

        host_deleted = (
            db.query(HostMetricSample)
            .filter(HostMetricSample.collected_at < cutoff)
            .delete(synchronize_session=False)
        )
        device_deleted = (
            db.query(DeviceMetricSample)
            .filter(DeviceMetricSample.collected_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()

        counts = {"host_samples": host_deleted, "device_samples": device_deleted}
        logger.info(f"Purged samples older than {cutoff.isoformat()}: {counts}")
        publish(EventTypes.METRICS_PURGED, {"cutoff": cutoff.isoformat(), **counts}, source="metrics")
        return counts

    # === Reads ===

    def list_host_metrics(self, db: Session, gateway_id: int, window_hours: int = 24) -> List[HostMetricSample]:
        gateway = self.registry.get(db, gateway_id)
        since = self._window_start(window_hours)
        return (
            db.query(HostMetricSample)
            .filter(HostMetricSample.gateway_id == gateway.id, HostMetricSample.collected_at >= since)
            .order_by(HostMetricSample.collected_at.asc(), HostMetricSample.id.asc())
            .all()
        )

    def list_device_metrics(self, db: Session, credential_id: int, window_hours: int = 24) -> List[DeviceMetricSample]:
        credential = db.get(DeviceCredential, credential_id)
        if credential is None or credential.deleted_at is not None:
            raise NotFoundError(f"Credential with id {credential_id} not found")
        since = self._window_start(window_hours)
        return (
            db.query(DeviceMetricSample)
            .filter(DeviceMetricSample.credential_id == credential.id, DeviceMetricSample.collected_at >= since)
            .order_by(DeviceMetricSample.collected_at.asc(), DeviceMetricSample.id.asc())
            .all()
        )

    def _window_start(self, window_hours: int) -> datetime:
        if window_hours <= 0:
            raise ValidationFailedError("window_hours must be positive")
        return self.clock() - timedelta(hours=window_hours)


def _require_active(gateway: Gateway) -> None:
    if gateway.status == GatewayStatus.DEPLOYING.value:
        raise HostBusyError(f"Gateway {gateway.name} is deploying, try again later")
    if gateway.status != GatewayStatus.ACTIVE.value:
        raise InvalidStateError(f"Gateway {gateway.name} is {gateway.status}, not active")


metrics_sampler = MetricsSampler()
