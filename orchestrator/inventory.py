# orchestrator/inventory.py
from dataclasses import dataclass

from orchestrator.utils import profile_filters, tag_filter, tags_to_dict

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class ProfileSummary:
    name: str
    instance_id: str = "-"
    state: str = "archived"
    public_ip: str = "-"
    launch_time: str = "-"
    source: str = "-"


def _fmt_time(value):
    if value is None:
        return "-"
    return value.astimezone().strftime(TIME_FORMAT)


def _source(tags):
    return "snapshot" if tags.get("Restored") == "true" else "base AMI"


def _summarize(inst):
    tags = tags_to_dict(inst.get("Tags"))
    return ProfileSummary(
        name=tags.get("Name", "-"),
        instance_id=inst["InstanceId"],
        state=inst["State"]["Name"],
        public_ip=inst.get("PublicIpAddress") or "-",
        launch_time=_fmt_time(inst.get("LaunchTime")),
        source=_source(tags),
    )


def _instances(ec2, filters):
    resp = ec2.describe_instances(Filters=filters)
    return [inst for r in resp.get("Reservations", []) for inst in r.get("Instances", [])]


def list_profiles(ec2, managed_by, show_all=False):
    """
    One row per profile. Without show_all only running instances are listed;
    with it, every instance state plus profiles that only exist as snapshots.
    """
    profiles = {}
    for inst in _instances(ec2, [tag_filter("ManagedBy", managed_by)]):
        summary = _summarize(inst)
        current = profiles.get(summary.name)
        # a running instance wins over a terminated one with the same name
        if current is None or summary.state == "running":
            profiles[summary.name] = summary

    if show_all:
        resp = ec2.describe_snapshots(OwnerIds=["self"], Filters=[tag_filter("ManagedBy", managed_by)])
        for snap in resp.get("Snapshots", []):
            name = tags_to_dict(snap.get("Tags")).get("Name")
            if name and name not in profiles:
                profiles[name] = ProfileSummary(name=name)

    rows = [p for p in profiles.values() if show_all or p.state == "running"]
    return sorted(rows, key=lambda p: p.name)


def profile_status(ec2, profile, managed_by):
    """Return (ProfileSummary or None, list of snapshot dicts for the profile)."""
    selected = None
    for inst in _instances(ec2, profile_filters(profile, managed_by)):
        if selected is None or inst["State"]["Name"] == "running":
            selected = inst
    if selected is not None:
        return _summarize(selected), []

    resp = ec2.describe_snapshots(OwnerIds=["self"], Filters=profile_filters(profile, managed_by))
    snapshots = sorted(resp.get("Snapshots", []), key=lambda s: s["SnapshotId"])
    return None, snapshots


def format_table(rows):
    lines = [f"{'NAME':<20} {'INSTANCE ID':<22} {'STATE':<14} {'PUBLIC IP':<16} {'LAUNCH TIME':<20} SOURCE"]
    lines.append("-" * 105)
    for p in rows:
        lines.append(
            f"{p.name:<20} {p.instance_id:<22} {p.state:<14} {p.public_ip:<16} {p.launch_time:<20} {p.source}"
        )
    return "\n".join(lines)
