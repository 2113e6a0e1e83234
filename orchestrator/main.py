# orchestrator/main.py
import argparse
import logging
import logging.config
import sys

import yaml

from orchestrator.config_loader import build_session, load_runtime_config
from orchestrator.errors import OrchestratorError
from orchestrator.inventory import format_table, list_profiles, profile_status
from orchestrator.lifecycle import ProfileOrchestrator
from orchestrator.utils import PROVIDER_ERRORS
from storage.dynamo_lock import DynamoLeaseLock
from storage.memory_lock import InMemoryLeaseLock


def load_logging_config(path="config/logging.yaml"):
    try:
        with open(path) as f:
            cfg = yaml.safe_load(f)
        logging.config.dictConfig(cfg)
    except (OSError, ValueError, TypeError, yaml.YAMLError):
        logging.basicConfig(
            level=logging.INFO,
            format='{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","msg":"%(message)s"}',
        )


def build_lock(cfg, session):
    log = logging.getLogger("orchestrator.main")
    # Select lock backend
    if cfg.lock_backend == "memory":
        log.info("Using in-memory lock (single process only)")
        return InMemoryLeaseLock(ttl_seconds=cfg.lock_ttl_seconds)
    lock = DynamoLeaseLock(cfg.lock_table, ttl_seconds=cfg.lock_ttl_seconds, region_name=cfg.aws_region, session=session)
    lock.ensure_table(max_attempts=cfg.poll_max_attempts, delay=cfg.poll_delay)
    log.info("Using DynamoDB lock: table=%s region=%s", cfg.lock_table, cfg.aws_region)
    return lock


def build_orchestrator(cfg, profile=None):
    session = build_session(cfg)
    try:
        lock = build_lock(cfg, session)
    except OrchestratorError as e:
        # lock table setup belongs to the profile's locking phase
        e.profile = e.profile or profile
        e.phase = e.phase or "locking"
        raise
    return ProfileOrchestrator(
        ec2=session.client("ec2"),
        lock=lock,
        config=cfg,
        iam=session.client("iam") if cfg.instance_role_name else None,
    )


def cmd_ensure(cfg, args):
    result = build_orchestrator(cfg, args.profile).ensure(args.profile)
    print(f"✅ Profile [{result.profile}] {result.outcome.value.lower()}: instance {result.instance_id}")
    if result.public_dns:
        key_file = cfg.key_file_path() if cfg.key_pair_name else "<key>.pem"
        print(f"Connect with: ssh -i {key_file} ec2-user@{result.public_dns}")
    return 0


def cmd_retire(cfg, args):
    result = build_orchestrator(cfg, args.profile).retire(args.profile)
    print(f"Snapshot [{result.snapshot_id}] created for instance [{result.instance_id}] (profile: {result.profile})")
    print(f"✅ Instance [{result.instance_id}] terminated.")
    if result.removed_snapshots:
        print(f"Removed stale snapshots: {', '.join(result.removed_snapshots)}")
    return 0


def cmd_list(cfg, args):
    ec2 = build_session(cfg).client("ec2")
    rows = list_profiles(ec2, cfg.managed_by, show_all=args.all)
    if not rows:
        print(f"No profiles managed by {cfg.managed_by} found.")
        return 0
    print(format_table(rows))
    return 0


def cmd_status(cfg, args):
    ec2 = build_session(cfg).client("ec2")
    summary, snapshots = profile_status(ec2, args.profile, cfg.managed_by)
    if summary is not None:
        print(f"Profile:     {summary.name}")
        print(f"Instance ID: {summary.instance_id}")
        print(f"State:       {summary.state}")
        print(f"Public IP:   {summary.public_ip}")
        print(f"Launch Time: {summary.launch_time}")
        print(f"Source:      {summary.source}")
    elif snapshots:
        print(f"No active instance. Found {len(snapshots)} snapshot(s) for profile [{args.profile}]:")
        for snap in snapshots:
            print(f"- Snapshot ID: {snap['SnapshotId']}")
            print(f"  Created At:  {snap.get('StartTime', '-')}")
            print(f"  Size (GiB):  {snap.get('VolumeSize', '-')}")
    else:
        print(f"No instance or snapshot found for profile [{args.profile}].")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create, reuse and retire one instance per profile.")
    parser.add_argument("--config", default=None, help="Runtime config path (default config/runtime.yaml)")
    parser.add_argument("--logging-config", default="config/logging.yaml", help="Logging config path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    ensure = subparsers.add_parser("ensure", help="Reuse, restore or create the instance for a profile")
    ensure.add_argument("profile")
    ensure.set_defaults(func=cmd_ensure)

    retire = subparsers.add_parser("retire", help="Snapshot and terminate the instance for a profile")
    retire.add_argument("profile")
    retire.set_defaults(func=cmd_retire)

    ls = subparsers.add_parser("list", help="List managed profiles")
    ls.add_argument("--all", action="store_true", help="Show all instances and snapshot-only profiles")
    ls.set_defaults(func=cmd_list)

    status = subparsers.add_parser("status", help="Show the status of a profile")
    status.add_argument("profile")
    status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    load_logging_config(args.logging_config)
    log = logging.getLogger("orchestrator.main")

    try:
        cfg = load_runtime_config(args.config)
        return args.func(cfg, args)
    except OrchestratorError as e:
        log.error("%s failed: %s", args.command, e)
        print(f"❌ {e}", file=sys.stderr)
        return 1
    except PROVIDER_ERRORS as e:
        log.error("%s failed: AWS error: %s", args.command, e)
        print(f"❌ {args.command}: AWS error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
