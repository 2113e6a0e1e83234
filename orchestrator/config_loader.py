# orchestrator/config_loader.py
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

import boto3
import yaml

from orchestrator.errors import ConfigError

RUNTIME_CONFIG_PATH = Path("config/runtime.yaml")

# yaml key -> env var
ENV_OVERRIDES = {
    "aws_access_key_id": "AWS_ACCESS_KEY_ID",
    "aws_secret_access_key": "AWS_SECRET_ACCESS_KEY",
    "aws_region": "AWS_REGION",
    "key_pair_name": "KEY_PAIR_NAME",
    "key_dir": "KEY_DIR",
    "instance_type": "INSTANCE_TYPE",
    "base_ami_pattern": "BASE_AMI_PATTERN",
    "security_group_name": "SECURITY_GROUP_NAME",
    "managed_by": "MANAGED_BY",
    "image_prefix": "IMAGE_PREFIX",
    "lock_backend": "LOCK_BACKEND",
    "lock_table": "LOCK_TABLE",
    "lock_ttl_seconds": "LOCK_TTL_SECONDS",
    "lock_retry_interval": "LOCK_RETRY_INTERVAL",
    "lock_timeout": "LOCK_TIMEOUT",
    "poll_delay": "POLL_DELAY",
    "poll_max_attempts": "POLL_MAX_ATTEMPTS",
    "operation_timeout": "OPERATION_TIMEOUT",
    "wait_for_snapshot": "WAIT_FOR_SNAPSHOT",
    "spot": "SPOT",
    "max_spot_price": "MAX_SPOT_PRICE",
    "instance_role_name": "INSTANCE_ROLE_NAME",
    "user_data_path": "USER_DATA_PATH",
}

INT_FIELDS = {"lock_ttl_seconds", "poll_max_attempts"}
FLOAT_FIELDS = {"lock_retry_interval", "lock_timeout", "poll_delay", "operation_timeout"}
BOOL_FIELDS = {"wait_for_snapshot", "spot"}


@dataclass(frozen=True)
class RuntimeConfig:
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_region: str | None = None
    key_pair_name: str | None = None
    key_dir: str = "."
    instance_type: str = "t2.micro"
    base_ami_pattern: str = "amzn2-ami-hvm-*-x86_64-gp2"
    security_group_name: str = "profile-orchestrator-sg"
    managed_by: str = "ProfileOrchestrator"
    image_prefix: str = "profile-orchestrator"
    lock_backend: str = "dynamo"
    lock_table: str = "profile-orchestrator-locks"
    lock_ttl_seconds: int = 300
    lock_retry_interval: float = 5.0
    lock_timeout: float = 600.0
    poll_delay: float = 1.0
    poll_max_attempts: int = 300
    operation_timeout: float | None = None
    wait_for_snapshot: bool = False
    spot: bool = False
    max_spot_price: str | None = None
    instance_role_name: str | None = None
    user_data_path: str | None = None

    def key_file_path(self, key_name=None) -> Path:
        name = key_name or self.key_pair_name
        if not name:
            raise ConfigError("key_pair_name is not configured")
        return Path(self.key_dir) / f"{name}.pem"

    def with_overrides(self, **overrides):
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _coerce(name, value):
    if value is None:
        return None
    try:
        if name in INT_FIELDS:
            return int(value)
        if name in FLOAT_FIELDS:
            return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be numeric, got {value!r}")
    if name in BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        return str(value).lower() in ("1", "true", "yes")
    return value


def load_runtime_config(path=None, environ=None) -> RuntimeConfig:
    """
    Loads runtime configuration.
    Priority:
      1) Environment variables
      2) config/runtime.yaml (if present)
      3) RuntimeConfig defaults
    """
    path = Path(path or os.getenv("RUNTIME_CONFIG", RUNTIME_CONFIG_PATH))
    environ = os.environ if environ is None else environ
    cfg = {}

    if path.exists():
        with open(path) as f:
            cfg = yaml.safe_load(f) or {}
        if not isinstance(cfg, dict):
            raise ConfigError(f"{path} must contain a mapping")

    known = {f.name for f in fields(RuntimeConfig)}
    values = {}
    for name in known:
        value = environ.get(ENV_OVERRIDES[name])
        if value is None:
            value = cfg.get(name)
        if value is not None:
            values[name] = _coerce(name, value)

    if values.get("lock_backend", "dynamo") not in ("dynamo", "memory"):
        raise ConfigError(f"lock_backend must be 'dynamo' or 'memory', got {values['lock_backend']!r}")

    return RuntimeConfig(**values)


def build_session(config: RuntimeConfig):
    if not config.aws_region:
        raise ConfigError("aws_region is not configured (set it in config/runtime.yaml or AWS_REGION)")
    if config.aws_access_key_id and config.aws_secret_access_key:
        return boto3.Session(
            aws_access_key_id=config.aws_access_key_id,
            aws_secret_access_key=config.aws_secret_access_key,
            region_name=config.aws_region,
        )
    return boto3.Session(region_name=config.aws_region)
