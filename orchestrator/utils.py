# orchestrator/utils.py
import time

from botocore.exceptions import BotoCoreError, ClientError

PROVIDER_ERRORS = (ClientError, BotoCoreError)


def tag_filter(key, *values):
    return {"Name": f"tag:{key}", "Values": list(values)}


def profile_filters(profile, managed_by):
    return [tag_filter("Name", profile), tag_filter("ManagedBy", managed_by)]


def tag_spec(resource_type, tags):
    return {
        "ResourceType": resource_type,
        "Tags": [{"Key": k, "Value": str(v)} for k, v in tags.items()],
    }


def tags_to_dict(tags):
    return {t["Key"]: t["Value"] for t in tags or []}


def error_code(exc):
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def deadline_after(seconds, clock=time.monotonic):
    if seconds is None:
        return None
    return clock() + seconds
