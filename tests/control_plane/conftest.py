# tests/control_plane/conftest.py
"""
Pytest fixtures for Control Plane tests
In-memory database, scripted remote executor and fresh service instances
"""

import itertools
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add paths for imports
PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "control-plane"))
sys.path.insert(0, str(Path(__file__).parent))

from config import settings  # noqa: E402
from core.credentials import DeviceCredentialManager  # noqa: E402
from core.deployment import DeploymentController  # noqa: E402
from core.events import event_bus  # noqa: E402
from core.gateway_registry import gateway_registry  # noqa: E402
from core.host_locks import HostLocks  # noqa: E402
from core.metrics import MetricsSampler  # noqa: E402
from core.signing_key import reset_signing_key  # noqa: E402
from database.models import Base, GatewayStatus  # noqa: E402
from fakes import SERVER_PUBLIC_KEY, FakeClock, FakeExecutor, no_sleep, script_healthy_host  # noqa: E402

TEST_JWT_SECRET = "test-signing-secret-0123456789abcdef-xyz"


# ============================================
# Database
# ============================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def clean_process_state(monkeypatch):
    """Empty event bus and a fixed signing secret for every test"""
    monkeypatch.setattr(settings, "JWT_SECRET", TEST_JWT_SECRET)
    event_bus.clear()
    reset_signing_key()
    yield
    event_bus.clear()
    reset_signing_key()


# ============================================
# Services wired to the fake executor
# ============================================

@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def healthy_executor():
    return script_healthy_host(FakeExecutor())


@pytest.fixture
def locks():
    return HostLocks()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(healthy_executor, locks):
    return DeploymentController(executor_factory=lambda gw: healthy_executor, locks=locks)


@pytest.fixture
def credential_mgr(healthy_executor, locks):
    return DeviceCredentialManager(executor_factory=lambda gw: healthy_executor, locks=locks)


@pytest.fixture
def sampler(healthy_executor, locks, clock):
    return MetricsSampler(
        executor_factory=lambda gw: healthy_executor,
        locks=locks,
        clock=clock,
        sleep=no_sleep,
        network_interval=1.0,
    )


@pytest.fixture
def make_gateway(db):
    """Register a gateway and force it into a lifecycle state"""
    counter = itertools.count(1)

    def _make(status: GatewayStatus = GatewayStatus.ACTIVE, address: str = None, **kwargs):
        n = next(counter)
        gateway = gateway_registry.register(
            db,
            name=kwargs.pop("name", f"gw{n}"),
            address=address or f"10.0.0.{n}",
            port=kwargs.pop("port", 22),
            username="root",
            password="secret",
            **kwargs,
        )
        if status != GatewayStatus.REGISTERED:
            gateway.status = status.value
            if status == GatewayStatus.ACTIVE:
                gateway.server_public_key = SERVER_PUBLIC_KEY
                gateway.deploy_progress = 5
            db.commit()
            db.refresh(gateway)
        return gateway

    return _make
