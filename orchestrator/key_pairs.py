# orchestrator/key_pairs.py
import logging
import os
import uuid

from orchestrator.config_loader import RuntimeConfig
from orchestrator.errors import ConfigError

log = logging.getLogger(__name__)


def generate_key_pair_name():
    return f"profile-orchestrator-key-{uuid.uuid4().hex[:16]}"


def resolve_key_pair(ec2, config: RuntimeConfig) -> str:
    """
    Return the key pair name instances are launched with.

    A configured key pair must have its private key next to the config
    (<key_dir>/<name>.pem). Without one, a fresh RSA key pair is created and
    its private key written out with 0600 permissions.
    """
    if config.key_pair_name:
        key_file = config.key_file_path()
        if not key_file.exists():
            raise ConfigError(f"private key file not found: {key_file}")
        return config.key_pair_name

    name = generate_key_pair_name()
    key_file = config.key_file_path(name)
    resp = ec2.create_key_pair(KeyName=name, KeyType="rsa")

    fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(resp["KeyMaterial"])
    log.info("Created key pair %s; private key written to %s (add key_pair_name to your config)", name, key_file)
    return resp["KeyName"]
