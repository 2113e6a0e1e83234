# orchestrator/instance_manager.py
import logging

from botocore.exceptions import ClientError

from orchestrator.errors import ConfigError, ProviderError, ResourceNotFound
from orchestrator.iam_roles import ensure_instance_profile
from orchestrator.key_pairs import resolve_key_pair
from orchestrator.poller import StatusProbe, wait_for
from orchestrator.utils import error_code, profile_filters, tag_spec

log = logging.getLogger(__name__)

LIVE_STATES = ["running", "pending"]
DEFAULT_ROOT_DEVICE = "/dev/xvda"


class InstanceProbe(StatusProbe):
    resource_kind = "EC2 instance"

    def __init__(self, ec2, instance_id):
        super().__init__(instance_id)
        self.ec2 = ec2

    def current_status(self):
        return describe_instance(self.ec2, self.resource_id)["State"]["Name"]

    def is_target(self, status):
        return status == "running"

    def is_error(self, status):
        return status in ("shutting-down", "terminated")


def describe_instance(ec2, instance_id):
    resp = ec2.describe_instances(InstanceIds=[instance_id])
    for reservation in resp.get("Reservations", []):
        for inst in reservation.get("Instances", []):
            return inst
    raise ResourceNotFound(f"instance {instance_id} not found")


def find_live_instance(ec2, profile, managed_by):
    """Return the live (pending/running) instance dict for profile, or None."""
    filters = profile_filters(profile, managed_by) + [
        {"Name": "instance-state-name", "Values": LIVE_STATES},
    ]
    resp = ec2.describe_instances(Filters=filters)
    live = [inst for r in resp.get("Reservations", []) for inst in r.get("Instances", [])]
    if not live:
        return None
    if len(live) > 1:
        log.warning("Profile %s has %d live instances; using %s", profile, len(live), live[0]["InstanceId"])
    # Prefer one that is already running
    live.sort(key=lambda i: i["State"]["Name"] != "running")
    return live[0]


def get_root_volume_id(ec2, instance_id):
    inst = describe_instance(ec2, instance_id)
    root_device = inst.get("RootDeviceName") or DEFAULT_ROOT_DEVICE
    for mapping in inst.get("BlockDeviceMappings", []):
        if mapping.get("DeviceName") == root_device and mapping.get("Ebs"):
            return mapping["Ebs"]["VolumeId"]
    raise ResourceNotFound(f"root volume {root_device} not found on instance {instance_id}")


def terminate_instance(ec2, instance_id):
    ec2.terminate_instances(InstanceIds=[instance_id])
    log.info("Terminate issued for instance %s", instance_id)


def get_latest_base_ami(ec2, name_pattern, owner="amazon"):
    resp = ec2.describe_images(
        Owners=[owner],
        Filters=[
            {"Name": "name", "Values": [name_pattern]},
            {"Name": "state", "Values": ["available"]},
        ],
    )
    images = resp.get("Images", [])
    if not images:
        raise ResourceNotFound(f"no base image matching {name_pattern} found")
    latest = max(images, key=lambda i: i.get("CreationDate") or "")
    return latest["ImageId"]


def get_default_vpc_id(ec2):
    resp = ec2.describe_vpcs(Filters=[{"Name": "is-default", "Values": ["true"]}])
    vpcs = resp.get("Vpcs", [])
    if not vpcs:
        raise ResourceNotFound("no default VPC found")
    return vpcs[0]["VpcId"]


def _lookup_security_group(ec2, group_name):
    resp = ec2.describe_security_groups(Filters=[{"Name": "group-name", "Values": [group_name]}])
    groups = resp.get("SecurityGroups", [])
    return groups[0]["GroupId"] if groups else None


def create_or_get_security_group(ec2, group_name, managed_by, ssh_cidr="0.0.0.0/0"):
    """
    Return the id of the shared security group, creating it (SSH ingress only)
    if it does not exist yet. A concurrent creator winning the race is fine.
    """
    group_id = _lookup_security_group(ec2, group_name)
    if group_id:
        return group_id

    vpc_id = get_default_vpc_id(ec2)
    try:
        resp = ec2.create_security_group(
            GroupName=group_name,
            Description=f"Security group managed by {managed_by}",
            VpcId=vpc_id,
            TagSpecifications=[tag_spec("security-group", {"ManagedBy": managed_by})],
        )
    except ClientError as e:
        if error_code(e) != "InvalidGroup.Duplicate":
            raise
        group_id = _lookup_security_group(ec2, group_name)
        if not group_id:
            raise ProviderError(f"security group {group_name} reported duplicate but was not found") from e
        return group_id

    group_id = resp["GroupId"]
    ec2.authorize_security_group_ingress(
        GroupId=group_id,
        IpPermissions=[
            {
                "IpProtocol": "tcp",
                "FromPort": 22,
                "ToPort": 22,
                "IpRanges": [{"CidrIp": ssh_cidr}],
            }
        ],
    )
    log.info("Created security group %s (%s) in %s", group_name, group_id, vpc_id)
    return group_id


def launch_instance(
    ec2,
    profile: str,
    ami_id: str,
    instance_type: str,
    security_group_id: str,
    key_name: str,
    managed_by: str,
    restored: bool = False,
    spot: bool = False,
    max_spot_price: str | None = None,
    instance_profile: str | None = None,
    user_data: str | None = None,
):
    """
    Issue run_instances for one instance tagged with the profile and return its id.
    The caller waits for it to be running.
    """
    tags = {"Name": profile, "ManagedBy": managed_by, "Restored": "true" if restored else "false"}
    launch_spec = {
        "ImageId": ami_id,
        "InstanceType": instance_type,
        "KeyName": key_name,
        "SecurityGroupIds": [security_group_id],
        "TagSpecifications": [tag_spec("instance", tags)],
    }
    if spot:
        launch_spec["InstanceMarketOptions"] = {
            "MarketType": "spot",
            "SpotOptions": {
                "SpotInstanceType": "one-time",
            },
        }
        if max_spot_price:
            launch_spec["InstanceMarketOptions"]["SpotOptions"]["MaxPrice"] = max_spot_price
    if instance_profile:
        launch_spec["IamInstanceProfile"] = {"Name": instance_profile}
    if user_data:
        launch_spec["UserData"] = user_data

    resp = ec2.run_instances(MinCount=1, MaxCount=1, **launch_spec)
    instance_id = resp["Instances"][0]["InstanceId"]
    log.info("Launched instance %s for profile %s from %s (restored=%s)", instance_id, profile, ami_id, restored)
    return instance_id


def public_endpoint(ec2, instance_id):
    inst = describe_instance(ec2, instance_id)
    return inst.get("PublicIpAddress"), inst.get("PublicDnsName")


class Provisioner:
    """
    Launches a profile instance from a given image with the shared security
    group, key pair and (optional) instance profile, and blocks until it runs.
    """

    def __init__(self, ec2, config, iam=None, wait=None):
        self.ec2 = ec2
        self.config = config
        self.iam = iam
        self.wait = wait or self._default_wait

    def _default_wait(self, probe, deadline=None):
        return wait_for(
            probe,
            max_attempts=self.config.poll_max_attempts,
            delay=self.config.poll_delay,
            deadline=deadline,
        )

    def _user_data(self):
        if not self.config.user_data_path:
            return None
        with open(self.config.user_data_path) as f:
            return f.read()

    def _instance_profile(self):
        if not self.config.instance_role_name:
            return None
        if self.iam is None:
            raise ConfigError("instance_role_name is set but no IAM client was provided")
        return ensure_instance_profile(self.iam, self.config.instance_role_name)

    def launch(self, profile, ami_id, restored=False, deadline=None):
        cfg = self.config
        sg_id = create_or_get_security_group(self.ec2, cfg.security_group_name, cfg.managed_by)
        key_name = resolve_key_pair(self.ec2, cfg)
        instance_id = launch_instance(
            self.ec2,
            profile=profile,
            ami_id=ami_id,
            instance_type=cfg.instance_type,
            security_group_id=sg_id,
            key_name=key_name,
            managed_by=cfg.managed_by,
            restored=restored,
            spot=cfg.spot,
            max_spot_price=cfg.max_spot_price,
            instance_profile=self._instance_profile(),
            user_data=self._user_data(),
        )
        self.wait_until_running(instance_id, deadline=deadline)
        return instance_id

    def wait_until_running(self, instance_id, deadline=None):
        return self.wait(InstanceProbe(self.ec2, instance_id), deadline=deadline)
