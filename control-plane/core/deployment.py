# control-plane/core/deployment.py
"""
Gateway Deployment Controller

Drives a gateway through a fixed, ordered sequence of remote steps:

    registered -> deploying -> active
                         \\-> failed -> deploying -> ...

- The controller advances only on success; the first failing step aborts
  the run, moves the host to 'failed' and records which step failed and
  what it printed.
- Gateway.deploy_progress counts completed steps. A retry starts at the
  first incomplete step, so completed steps are never executed twice.
- There is no automatic retry. The operator re-invokes deploy().
- Only a successful verification probe makes a gateway 'active'.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from database.models import DeploymentStepLog, Gateway, GatewayStatus, utcnow
from .domain_events import EventTypes, deployment_failed_payload, gateway_status_payload
from .events import publish
from .exceptions import HostBusyError
from .gateway_registry import GatewayRegistry, gateway_registry
from .host_locks import HostLocks, host_locks
from .remote import ExecutorFactory, HostConnection, executor_for
from .wireguard import GatewayCommands, confirmed, is_wg_key

logger = logging.getLogger(__name__)

# Longest step output kept on the gateway row and in the step log
MAX_OUTPUT_LENGTH = 4000


@dataclass(frozen=True)
class DeploymentStep:
    """
    One remote step

    build: returns the command for a gateway
    succeeded: decides from stdout whether the step did its job
    apply: copies facts learned from stdout onto the gateway row
    """
    name: str
    build: Callable[[Gateway], str]
    succeeded: Callable[[str], bool] = confirmed
    apply: Optional[Callable[[Gateway, str], None]] = None


def _store_server_key(gateway: Gateway, output: str) -> None:
    gateway.server_public_key = output.strip()


DEPLOYMENT_STEPS: List[DeploymentStep] = [
    DeploymentStep(
        name="install_packages",
        build=lambda gw: GatewayCommands(gw).install_docker(),
        succeeded=lambda out: out.strip().splitlines()[-1:] in (["present"], ["installed"]),
    ),
    DeploymentStep(
        name="bootstrap_gateway",
        build=lambda gw: GatewayCommands(gw).bootstrap_container(),
    ),
    DeploymentStep(
        name="configure_interface",
        build=lambda gw: GatewayCommands(gw).write_interface_config(),
    ),
    DeploymentStep(
        name="activate_service",
        build=lambda gw: GatewayCommands(gw).bring_up_interface(),
    ),
    DeploymentStep(
        name="verify",
        build=lambda gw: GatewayCommands(gw).show_public_key(),
        succeeded=is_wg_key,
        apply=_store_server_key,
    ),
]


@dataclass
class DeploymentResult:
    gateway_id: int
    status: str
    steps_run: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    output: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == GatewayStatus.ACTIVE.value


class DeploymentController:
    """Owns the per-gateway deployment state machine"""

    def __init__(
        self,
        executor_factory: ExecutorFactory = executor_for,
        steps: Optional[List[DeploymentStep]] = None,
        registry: GatewayRegistry = gateway_registry,
        locks: HostLocks = host_locks,
    ):
        self.executor_factory = executor_factory
        self.steps = steps if steps is not None else DEPLOYMENT_STEPS
        self.registry = registry
        self.locks = locks

    async def deploy(self, db: Session, gateway_id: int, operator: Optional[str] = None) -> DeploymentResult:
        """
        Run (or resume) deployment of a gateway

        Raises:
            NotFoundError: unknown or deleted gateway
            HostBusyError: a deployment, sampling run or credential change holds the host
            InvalidTransitionError: gateway is already active
        """
        gateway = self.registry.get(db, gateway_id)

        lock = self.locks.get(gateway.id)
        if gateway.status == GatewayStatus.DEPLOYING.value or lock.locked():
            raise HostBusyError(f"Gateway {gateway.name} is busy, try again later")

        async with lock:
            db.refresh(gateway)
            old_status = gateway.status
            self.registry.claim_for_deployment(db, gateway)
            publish(
                EventTypes.GATEWAY_DEPLOYMENT_STARTED,
                gateway_status_payload(gateway.id, gateway.name, old_status, gateway.status),
                source="deployment",
                operator=operator,
            )
            try:
                return await self._run_steps(db, gateway, operator)
            except (Exception, asyncio.CancelledError) as e:
                # Never leave a host stuck in 'deploying'
                db.rollback()
                db.refresh(gateway)
                if gateway.status == GatewayStatus.DEPLOYING.value:
                    gateway.failure_output = f"deployment aborted: {e!r}"[:MAX_OUTPUT_LENGTH]
                    self.registry.update_state(db, gateway, GatewayStatus.FAILED, operator=operator)
                raise

    async def _run_steps(self, db: Session, gateway: Gateway, operator: Optional[str]) -> DeploymentResult:
        result = DeploymentResult(gateway_id=gateway.id, status=gateway.status)
        connection = HostConnection.from_gateway(gateway)
        executor = self.executor_factory(gateway)
        start_index = min(gateway.deploy_progress or 0, len(self.steps))

        if start_index:
            logger.info(f"Resuming deployment of {gateway.name} at step {start_index + 1}/{len(self.steps)}")
        else:
            logger.info(f"Deploying {gateway.name} ({len(self.steps)} steps)")

        for index in range(start_index, len(self.steps)):
            step = self.steps[index]
            started_at = utcnow()
            command_result = await executor.execute(connection, step.build(gateway))
            success = command_result.ok and step.succeeded(command_result.output)
            output = (command_result.output if success else command_result.describe())[:MAX_OUTPUT_LENGTH]

            db.add(DeploymentStepLog(
                gateway_id=gateway.id,
                step_index=index,
                step_name=step.name,
                success=success,
                output=output,
                operator=operator,
                started_at=started_at,
                finished_at=utcnow(),
            ))
            db.commit()
            result.steps_run.append(step.name)

            db.refresh(gateway)
            if gateway.status == GatewayStatus.DELETED.value:
                logger.info(f"Gateway {gateway.name} was deleted during deployment, stopping")
                result.status = gateway.status
                return result

            if not success:
                return self._fail(db, gateway, index, step, output, result, operator)

            if step.apply is not None:
                step.apply(gateway, command_result.output)
            gateway.deploy_progress = index + 1
            db.commit()
            logger.info(f"{gateway.name}: step {index + 1}/{len(self.steps)} '{step.name}' done")

        gateway.failed_step = None
        gateway.failure_output = None
        self.registry.update_state(db, gateway, GatewayStatus.ACTIVE, operator=operator)
        publish(
            EventTypes.GATEWAY_ACTIVATED,
            gateway_status_payload(gateway.id, gateway.name, GatewayStatus.DEPLOYING.value, gateway.status),
            source="deployment",
            operator=operator,
        )
        result.status = gateway.status
        return result

    def _fail(
        self,
        db: Session,
        gateway: Gateway,
        index: int,
        step: DeploymentStep,
        output: str,
        result: DeploymentResult,
        operator: Optional[str],
    ) -> DeploymentResult:
        gateway.failed_step = step.name
        gateway.failure_output = output
        self.registry.update_state(db, gateway, GatewayStatus.FAILED, reason=step.name, operator=operator)
        publish(
            EventTypes.GATEWAY_DEPLOYMENT_FAILED,
            deployment_failed_payload(gateway.id, gateway.name, step.name, index, output),
            source="deployment",
            operator=operator,
        )
        result.status = gateway.status
        result.failed_step = step.name
        result.output = output
        return result

    def step_log(self, db: Session, gateway_id: int) -> List[DeploymentStepLog]:
        """Every recorded step outcome of a gateway, oldest first"""
        gateway = self.registry.get(db, gateway_id)
        return (
            db.query(DeploymentStepLog)
            .filter(DeploymentStepLog.gateway_id == gateway.id)
            .order_by(DeploymentStepLog.id)
            .all()
        )


deployment_controller = DeploymentController()
