import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict
from .models import FleetMember, DeploymentPlan, DeploymentConfig, Lifecycle, Health
from .engine import DeploymentEngine
from .errors import DeploymentError
from .failure import FailureInjector
from .fleet import simulated_fleet
from .logger import setup_logging, get_logger, LOG_LEVELS


def load_fleet(path):
    logger = get_logger("cli")
    try:
        with open(path) as f:
            data = json.load(f)
        members = []
        for m in data:
            member = FleetMember(
                member_id=m["member_id"],
                version=m["version"],
                lifecycle=Lifecycle(m.get("lifecycle", "in_service")),
                health=Health(m.get("health", "unknown")),
                created_at=float(m.get("created_at", 0.0)),
                round_index=m.get("round_index"),
            )
            members.append(member)
        return members
    except Exception as e:
        logger.error(f"Error loading fleet: {e}")
        raise


def save_fleet(path, members):
    with open(path, "w") as f:
        json.dump([asdict(m) for m in members if m.is_active], f, indent=2)


def _build_config(args):
    config = DeploymentConfig.from_file(args.config) if args.config else DeploymentConfig()
    if args.poll_interval is not None:
        config.poll_interval_s = args.poll_interval
    if args.health_timeout is not None:
        config.health_timeout_s = args.health_timeout
    config.validate()
    return config


def _build_parser():
    parser = argparse.ArgumentParser(prog="rollout-engine", description="Rolling deployment orchestrator")
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    sub = parser.add_subparsers(dest="cmd", required=True)

    deploy = sub.add_parser("deploy", help="Run a simulated rolling deployment over a fleet file")
    deploy.add_argument("--fleet", required=True, help="JSON file listing fleet members")
    deploy.add_argument("--version", required=True, help="Target artifact version")
    deploy.add_argument("--min-healthy", type=float, required=True, help="Minimum healthy percentage")
    deploy.add_argument("--capacity", type=int, help="Desired capacity (defaults to the fleet size)")
    deploy.add_argument("--warmup", type=float, default=0.0, help="Warmup seconds before health polling")
    deploy.add_argument("--poll-interval", type=float)
    deploy.add_argument("--health-timeout", type=float)
    deploy.add_argument("--config", help="JSON file with DeploymentConfig fields")
    deploy.add_argument("--fleet-id", help="Fleet identity for the lease (defaults to the file name)")
    deploy.add_argument("--unhealthy", action="append", default=[],
                        help="Launched member id (e.g. v2-1) that reports UNHEALTHY")
    deploy.add_argument("--fail-launch", action="append", default=[],
                        help="Launched member id whose launch fails")
    deploy.add_argument("--dry-run", action="store_true")

    plan = sub.add_parser("plan", help="Print the replacement rounds without deploying")
    plan.add_argument("--fleet", required=True)
    plan.add_argument("--version", required=True)
    plan.add_argument("--min-healthy", type=float, required=True)
    plan.add_argument("--capacity", type=int)
    return parser


def _run_deploy(args):
    members = load_fleet(args.fleet)
    active = [m for m in members if m.is_active]
    plan = DeploymentPlan(
        target_version=args.version,
        desired_capacity=args.capacity if args.capacity is not None else len(active),
        min_healthy_percentage=args.min_healthy,
        warmup_s=args.warmup,
    )
    plan.validate()
    config = _build_config(args)

    injector = FailureInjector(
        fail_launches=args.fail_launch,
        health_scripts={member_id: ["unhealthy"] for member_id in args.unhealthy},
    )
    fleet_id = args.fleet_id or os.path.splitext(os.path.basename(args.fleet))[0]
    fleet = simulated_fleet(fleet_id, members, injector)

    outcome = asyncio.run(DeploymentEngine().deploy(fleet, plan, config, dry_run=args.dry_run))
    print(json.dumps(outcome.to_dict(), indent=2, default=str))
    if not args.dry_run:
        save_fleet(args.fleet, fleet.registry.members.values())
    return 0 if outcome.succeeded else 1


def _run_plan(args):
    members = [m for m in load_fleet(args.fleet) if m.is_active]
    plan = DeploymentPlan(
        target_version=args.version,
        desired_capacity=args.capacity if args.capacity is not None else len(members),
        min_healthy_percentage=args.min_healthy,
    )
    plan.validate()
    old = DeploymentEngine.select_replacements(members, plan.target_version)
    batches = DeploymentEngine.plan_batches(old, plan.batch_size)
    print(json.dumps({
        "batch_size": plan.batch_size,
        "min_healthy": plan.min_healthy_count,
        "rounds": [[m.member_id for m in batch] for batch in batches],
    }, indent=2))
    return 0


def main(argv=None):
    args = _build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.cmd == "deploy":
            return _run_deploy(args)
        return _run_plan(args)
    except (OSError, ValueError, KeyError, DeploymentError) as e:
        print(f"Error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
