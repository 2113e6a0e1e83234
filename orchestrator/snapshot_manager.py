# orchestrator/snapshot_manager.py
import logging
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from orchestrator.errors import CleanupWarning, ProviderError
from orchestrator.instance_manager import DEFAULT_ROOT_DEVICE
from orchestrator.poller import StatusProbe
from orchestrator.utils import PROVIDER_ERRORS, error_code, profile_filters, tag_spec

log = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SnapshotProbe(StatusProbe):
    resource_kind = "EBS snapshot"

    def __init__(self, ec2, snapshot_id):
        super().__init__(snapshot_id)
        self.ec2 = ec2

    def current_status(self):
        resp = self.ec2.describe_snapshots(SnapshotIds=[self.resource_id])
        return resp["Snapshots"][0]["State"]

    def is_target(self, status):
        return status == "completed"

    def is_error(self, status):
        return status == "error"


class SnapshotManager:
    """
    Point-in-time artifacts for a profile: root volume snapshots and the
    images registered from them when restoring.
    """

    def __init__(self, ec2, config, provisioner):
        self.ec2 = ec2
        self.config = config
        self.provisioner = provisioner

    @property
    def managed_by(self):
        return self.config.managed_by

    def image_name(self, snapshot_id):
        return f"{self.config.image_prefix}-ami-from-{snapshot_id}"

    def create_snapshot(self, volume_id, instance_id, profile, deadline=None):
        resp = self.ec2.create_snapshot(
            VolumeId=volume_id,
            Description=f"Snapshot before deleting instance {instance_id}",
            TagSpecifications=[
                tag_spec(
                    "snapshot",
                    {"Name": profile, "InstanceID": instance_id, "ManagedBy": self.managed_by},
                )
            ],
        )
        snapshot_id = resp["SnapshotId"]
        log.info("Snapshot %s created from volume %s (instance %s, profile %s)", snapshot_id, volume_id, instance_id, profile)
        if self.config.wait_for_snapshot:
            self.provisioner.wait(SnapshotProbe(self.ec2, snapshot_id), deadline=deadline)
        return snapshot_id

    def list_snapshots(self, profile):
        resp = self.ec2.describe_snapshots(
            OwnerIds=["self"],
            Filters=profile_filters(profile, self.managed_by),
        )
        return resp.get("Snapshots", [])

    def find_latest_snapshot(self, profile):
        candidates = [s for s in self.list_snapshots(profile) if s.get("State") != "error"]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.get("StartTime") or EPOCH)

    def _lookup_image(self, name):
        resp = self.ec2.describe_images(Owners=["self"], Filters=[{"Name": "name", "Values": [name]}])
        images = resp.get("Images", [])
        return images[0]["ImageId"] if images else None

    def register_image_from_snapshot(self, snapshot_id):
        """Register (or reuse) the image derived from snapshot_id."""
        name = self.image_name(snapshot_id)
        image_id = self._lookup_image(name)
        if image_id:
            log.info("Reusing image %s (%s)", image_id, name)
            return image_id

        try:
            resp = self.ec2.register_image(
                Name=name,
                Architecture="x86_64",
                BlockDeviceMappings=[
                    {
                        "DeviceName": DEFAULT_ROOT_DEVICE,
                        "Ebs": {
                            "SnapshotId": snapshot_id,
                            "VolumeType": "gp2",
                            "DeleteOnTermination": True,
                        },
                    }
                ],
                RootDeviceName=DEFAULT_ROOT_DEVICE,
                VirtualizationType="hvm",
                EnaSupport=True,
            )
        except ClientError as e:
            if error_code(e) != "InvalidAMIName.Duplicate":
                raise
            image_id = self._lookup_image(name)
            if not image_id:
                raise ProviderError(f"image {name} reported duplicate but was not found") from e
            return image_id

        log.info("Registered image %s from snapshot %s", resp["ImageId"], snapshot_id)
        return resp["ImageId"]

    def restore_from_snapshot(self, profile, deadline=None):
        """
        Launch an instance for profile from its latest snapshot.
        Returns the instance id, or None when the profile has no snapshot.
        """
        snapshot = self.find_latest_snapshot(profile)
        if snapshot is None:
            log.info("No snapshot found for profile %s", profile)
            return None

        snapshot_id = snapshot["SnapshotId"]
        log.info("Restoring profile %s from snapshot %s", profile, snapshot_id)
        if snapshot.get("State") == "pending":
            self.provisioner.wait(SnapshotProbe(self.ec2, snapshot_id), deadline=deadline)

        image_id = self.register_image_from_snapshot(snapshot_id)
        return self.provisioner.launch(profile, image_id, restored=True, deadline=deadline)

    def delete_snapshot_and_images(self, snapshot_id, profile):
        resp = self.ec2.describe_images(
            Owners=["self"],
            Filters=[{"Name": "block-device-mapping.snapshot-id", "Values": [snapshot_id]}],
        )
        for image in resp.get("Images", []):
            try:
                self.ec2.deregister_image(ImageId=image["ImageId"])
            except PROVIDER_ERRORS as e:
                raise CleanupWarning(
                    f"failed to deregister image {image['ImageId']} using snapshot {snapshot_id}: {e}",
                    profile=profile,
                ) from e
            log.info("Deregistered image %s using snapshot %s", image["ImageId"], snapshot_id)

        try:
            self.ec2.delete_snapshot(SnapshotId=snapshot_id)
        except PROVIDER_ERRORS as e:
            raise CleanupWarning(f"failed to delete snapshot {snapshot_id}: {e}", profile=profile) from e
        log.info("Deleted old snapshot %s for profile %s", snapshot_id, profile)

    def delete_stale_artifacts(self, profile, keep_snapshot_id=None):
        """
        Best-effort removal of every snapshot of profile other than
        keep_snapshot_id, with the images registered from them.
        Returns the ids of the snapshots that were deleted.
        """
        deleted = []
        try:
            snapshots = self.list_snapshots(profile)
        except PROVIDER_ERRORS as e:
            log.warning("Cleanup skipped for profile %s: failed to list snapshots: %s", profile, e)
            return deleted

        for snap in snapshots:
            snapshot_id = snap["SnapshotId"]
            if snapshot_id == keep_snapshot_id:
                continue
            try:
                self.delete_snapshot_and_images(snapshot_id, profile)
            except CleanupWarning as w:
                log.warning("%s", w)
                continue
            except PROVIDER_ERRORS as e:
                log.warning("Failed to look up images for snapshot %s (profile %s): %s", snapshot_id, profile, e)
                continue
            deleted.append(snapshot_id)
        return deleted
