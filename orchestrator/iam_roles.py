# orchestrator/iam_roles.py
import json
import logging

from botocore.exceptions import ClientError

from orchestrator.utils import error_code

log = logging.getLogger(__name__)

POLICY_NAME = "ProfileInstanceSelfManagement"

TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}

# Lets an instance snapshot and terminate itself (e.g. an idle-shutdown script in user data)
SELF_MANAGEMENT_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": [
                "ec2:CreateImage",
                "ec2:DeregisterImage",
                "ec2:DescribeImages",
                "ec2:TerminateInstances",
                "ec2:CreateTags",
                "ec2:DescribeInstances",
                "ec2:DescribeVolumes",
                "ec2:CreateSnapshot",
                "ec2:DeleteSnapshot",
                "ec2:DescribeSnapshots",
            ],
            "Resource": "*",
        }
    ],
}


def _exists(fn, **kwargs):
    try:
        fn(**kwargs)
        return True
    except ClientError as e:
        if error_code(e) == "NoSuchEntity":
            return False
        raise


def _tolerate_duplicate(fn, **kwargs):
    try:
        fn(**kwargs)
    except ClientError as e:
        if error_code(e) != "EntityAlreadyExists":
            raise


def ensure_instance_profile(iam, role_name: str) -> str:
    """
    Make sure role_name exists as an IAM role with the self-management policy
    and an instance profile of the same name. Returns the instance profile name.
    """
    if not _exists(iam.get_role, RoleName=role_name):
        _tolerate_duplicate(
            iam.create_role,
            RoleName=role_name,
            AssumeRolePolicyDocument=json.dumps(TRUST_POLICY),
            Description="Role for instances managed by the profile orchestrator",
        )
        iam.put_role_policy(
            RoleName=role_name,
            PolicyName=POLICY_NAME,
            PolicyDocument=json.dumps(SELF_MANAGEMENT_POLICY),
        )
        log.info("Created IAM role %s", role_name)

    if not _exists(iam.get_instance_profile, InstanceProfileName=role_name):
        _tolerate_duplicate(iam.create_instance_profile, InstanceProfileName=role_name)
        iam.add_role_to_instance_profile(InstanceProfileName=role_name, RoleName=role_name)
        log.info("Created instance profile %s", role_name)

    return role_name
