# control-plane/jobs.py
"""
Scheduled and one-off fleet jobs

Meant to be driven by cron or a systemd timer, e.g.:

    */5 * * * *  fleet-jobs collect
    0 * * * *    fleet-jobs purge
"""

import argparse
import asyncio
import logging
import sys

from config import settings
from core.auth import issue_token
from core.deployment import deployment_controller
from core.event_handlers import register_event_handlers
from core.exceptions import FleetError
from core.metrics import metrics_sampler
from database.session import get_db_session, init_db

logger = logging.getLogger("fleet-jobs")


def run_collect(args) -> int:
    db = get_db_session()
    try:
        results = asyncio.run(metrics_sampler.collect_all(db))
    finally:
        db.close()
    failed = [gateway_id for gateway_id, result in results.items() if result is None]
    logger.info(f"Sampled {len(results) - len(failed)}/{len(results)} active gateways")
    return 1 if failed else 0


def run_purge(args) -> int:
    db = get_db_session()
    try:
        counts = metrics_sampler.purge_expired(db)
    finally:
        db.close()
    print(f"Deleted {counts['host_samples']} host samples, {counts['device_samples']} device samples")
    return 0


def run_deploy(args) -> int:
    db = get_db_session()
    try:
        result = asyncio.run(deployment_controller.deploy(db, args.gateway_id, operator=args.operator))
    finally:
        db.close()
    if result.succeeded:
        print(f"Gateway {result.gateway_id} is {result.status}")
        return 0
    print(f"Gateway {result.gateway_id} is {result.status}: step '{result.failed_step}' failed: {result.output}")
    return 1


def run_issue_token(args) -> int:
    db = get_db_session()
    try:
        print(issue_token(db, args.operator, ttl_seconds=args.ttl))
    finally:
        db.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VPN gateway fleet jobs")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    collect = subparsers.add_parser("collect", help="Sample every active gateway")
    collect.set_defaults(func=run_collect)

    purge = subparsers.add_parser("purge", help="Delete samples past the retention window")
    purge.set_defaults(func=run_purge)

    deploy = subparsers.add_parser("deploy", help="Deploy or resume deploying one gateway")
    deploy.add_argument("gateway_id", type=int, help="Gateway id")
    deploy.add_argument("--operator", default="cli", help="Operator id recorded in the audit trail")
    deploy.set_defaults(func=run_deploy)

    token = subparsers.add_parser("issue-token", help="Print an operator API token")
    token.add_argument("operator", help="Operator id (token subject)")
    token.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    token.set_defaults(func=run_issue_token)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    init_db()
    register_event_handlers()

    try:
        return args.func(args)
    except FleetError as e:
        logger.error(f"{e.error_code}: {e.message}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
