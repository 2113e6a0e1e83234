# orchestrator/lifecycle.py
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from orchestrator.config_loader import RuntimeConfig
from orchestrator.errors import LockHeld, LockTimeout, OrchestratorError, ProviderError, ResourceNotFound
from orchestrator.instance_manager import (
    Provisioner,
    find_live_instance,
    get_latest_base_ami,
    get_root_volume_id,
    public_endpoint,
    terminate_instance,
)
from orchestrator.snapshot_manager import SnapshotManager
from orchestrator.utils import PROVIDER_ERRORS, deadline_after

log = logging.getLogger(__name__)


class Outcome(str, Enum):
    NO_INSTANCE = "NoInstance"
    REUSED = "Reused"
    RESTORED = "Restored"
    CREATED = "Created"
    DESTROYED = "Destroyed"


@dataclass
class EnsureResult:
    profile: str
    instance_id: str
    outcome: Outcome
    public_ip: str | None = None
    public_dns: str | None = None


@dataclass
class RetireResult:
    profile: str
    instance_id: str
    snapshot_id: str
    outcome: Outcome = Outcome.DESTROYED
    removed_snapshots: list = field(default_factory=list)


def lock_id_for(profile):
    return f"profile-{profile}"


class ProfileOrchestrator:
    """
    Reuse / restore / create / destroy the single instance behind a profile.

    Every mutation for a profile happens while holding that profile's lease,
    so concurrent ensure/retire calls on the same profile are serialized.
    """

    def __init__(
        self,
        ec2,
        lock,
        config: RuntimeConfig,
        iam=None,
        provisioner: Provisioner | None = None,
        snapshots: SnapshotManager | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.ec2 = ec2
        self.lock = lock
        self.config = config
        self.sleep = sleep
        self.clock = clock
        self.provisioner = provisioner or Provisioner(ec2, config, iam=iam)
        self.snapshots = snapshots or SnapshotManager(ec2, config, self.provisioner)

    # ------------------------------------------
    # Locking
    # ------------------------------------------
    def acquire_with_retry(self, lock_id, deadline=None):
        """
        Poll lock.acquire on a fixed interval until it succeeds, lock_timeout
        elapses or the operation deadline passes.
        """
        start = self.clock()
        give_up = start + self.config.lock_timeout
        if deadline is not None:
            give_up = min(give_up, deadline)

        while True:
            try:
                self.lock.acquire(lock_id)
                log.info("Acquired lock %s", lock_id)
                return
            except LockHeld:
                now = self.clock()
                elapsed = now - start
                if now >= give_up:
                    raise LockTimeout(f"failed to acquire lock {lock_id} after {round(elapsed)}s")
                log.info(
                    "Profile is being created or terminated by someone else. Retrying lock %s... (elapsed %ss)",
                    lock_id,
                    round(elapsed),
                )
                # last attempt lands on the deadline itself
                self.sleep(min(self.config.lock_retry_interval, give_up - now))

    @contextmanager
    def locked(self, profile, deadline=None):
        lock_id = lock_id_for(profile)
        with self.phase(profile, "locking"):
            self.acquire_with_retry(lock_id, deadline=deadline)
        try:
            yield
        finally:
            try:
                self.lock.release(lock_id)
                log.info("Released lock %s", lock_id)
            except (OrchestratorError, *PROVIDER_ERRORS) as e:
                log.error("Failed to release lock %s (it expires after its TTL): %s", lock_id, e)

    @contextmanager
    def phase(self, profile, name):
        """Tag errors raised inside the block with the profile and phase."""
        try:
            yield
        except OrchestratorError as e:
            if e.profile is None:
                e.profile = profile
            if e.phase is None:
                e.phase = name
            raise
        except PROVIDER_ERRORS as e:
            raise ProviderError(str(e), profile=profile, phase=name) from e

    # ------------------------------------------
    # Use / create
    # ------------------------------------------
    def ensure(self, profile) -> EnsureResult:
        deadline = deadline_after(self.config.operation_timeout, self.clock)

        with self.locked(profile, deadline=deadline):
            outcome = Outcome.NO_INSTANCE

            with self.phase(profile, "searching"):
                existing = find_live_instance(self.ec2, profile, self.config.managed_by)

            if existing is not None:
                instance_id = existing["InstanceId"]
                outcome = Outcome.REUSED
                log.info("Reusing instance %s for profile %s (%s)", instance_id, profile, existing["State"]["Name"])
                if existing["State"]["Name"] == "pending":
                    with self.phase(profile, "launching"):
                        self.provisioner.wait_until_running(instance_id, deadline=deadline)
            else:
                with self.phase(profile, "restoring"):
                    instance_id = self.snapshots.restore_from_snapshot(profile, deadline=deadline)

                if instance_id is not None:
                    outcome = Outcome.RESTORED
                    # The restored volume now lives on the instance; old artifacts are stale
                    self.snapshots.delete_stale_artifacts(profile)
                else:
                    with self.phase(profile, "launching"):
                        log.info("No snapshot for profile %s. Launching fresh instance.", profile)
                        ami_id = get_latest_base_ami(self.ec2, self.config.base_ami_pattern)
                        instance_id = self.provisioner.launch(profile, ami_id, restored=False, deadline=deadline)
                    outcome = Outcome.CREATED

            with self.phase(profile, "searching"):
                public_ip, public_dns = public_endpoint(self.ec2, instance_id)

        log.info("Profile %s: %s instance %s", profile, outcome.value, instance_id)
        return EnsureResult(profile, instance_id, outcome, public_ip, public_dns)

    # ------------------------------------------
    # Delete
    # ------------------------------------------
    def retire(self, profile) -> RetireResult:
        deadline = deadline_after(self.config.operation_timeout, self.clock)

        with self.locked(profile, deadline=deadline):
            with self.phase(profile, "searching"):
                existing = find_live_instance(self.ec2, profile, self.config.managed_by)
                if existing is None:
                    raise ResourceNotFound(f"no running instance found for profile {profile}")
                instance_id = existing["InstanceId"]

            if existing["State"]["Name"] == "pending":
                with self.phase(profile, "launching"):
                    self.provisioner.wait_until_running(instance_id, deadline=deadline)

            with self.phase(profile, "searching"):
                volume_id = get_root_volume_id(self.ec2, instance_id)

            # Snapshot must exist before terminate is issued
            with self.phase(profile, "snapshotting"):
                snapshot_id = self.snapshots.create_snapshot(volume_id, instance_id, profile, deadline=deadline)

            with self.phase(profile, "terminating"):
                terminate_instance(self.ec2, instance_id)

            removed = self.snapshots.delete_stale_artifacts(profile, keep_snapshot_id=snapshot_id)

        log.info("Profile %s: instance %s terminated, snapshot %s kept", profile, instance_id, snapshot_id)
        return RetireResult(profile, instance_id, snapshot_id, removed_snapshots=removed)
