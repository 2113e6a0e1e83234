# storage/dynamo_lock.py
import logging
import time

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from orchestrator.errors import LockHeld, ProviderError
from orchestrator.poller import StatusProbe, wait_for

log = logging.getLogger(__name__)

DEFAULT_TABLE = "profile-orchestrator-locks"
DEFAULT_TTL = 300


class LockTableProbe(StatusProbe):
    resource_kind = "DynamoDB table"

    def __init__(self, client, table_name):
        super().__init__(table_name)
        self.client = client

    def current_status(self):
        return self.client.describe_table(TableName=self.resource_id)["Table"]["TableStatus"]

    def is_target(self, status):
        return status == "ACTIVE"

    def is_error(self, status):
        return status == "DELETING"


class DynamoLeaseLock:
    """
    DynamoDB-backed TTL lease lock.

    Table schema (created by ensure_table):
      - PK: LockID (S)
      - Attributes: Expires (N, epoch seconds)

    A lease is taken with one conditional put that succeeds only when no item
    exists or the existing item has expired, so a crashed holder is evicted by
    the next acquirer once its TTL passes. Leases are not renewed.
    """

    def __init__(
        self,
        table_name: str = DEFAULT_TABLE,
        ttl_seconds: int = DEFAULT_TTL,
        region_name: str | None = None,
        session=None,
        clock=time.time,
    ):
        self.table_name = table_name
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        if session is None:
            session = boto3.Session(region_name=region_name)
        self.dynamodb = session.resource("dynamodb", region_name=region_name)
        self.client = self.dynamodb.meta.client
        self.table = self.dynamodb.Table(table_name)

    def table_exists(self) -> bool:
        try:
            self.client.describe_table(TableName=self.table_name)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceNotFoundException":
                return False
            raise ProviderError(f"Dynamo describe_table failed: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"Dynamo describe_table failed: {e}") from e

    def ensure_table(self, max_attempts=300, delay=1.0, deadline=None):
        """Create the lock table if missing and wait until it is ACTIVE."""
        if not self.table_exists():
            log.info("Creating DynamoDB lock table: %s", self.table_name)
            try:
                self.client.create_table(
                    TableName=self.table_name,
                    AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
                    KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
                    BillingMode="PAY_PER_REQUEST",
                )
            except ClientError as e:
                # Another caller created it first
                if e.response["Error"]["Code"] != "ResourceInUseException":
                    raise ProviderError(f"Dynamo create_table failed: {e}") from e
            except BotoCoreError as e:
                raise ProviderError(f"Dynamo create_table failed: {e}") from e
        probe = LockTableProbe(self.client, self.table_name)
        try:
            wait_for(probe, max_attempts=max_attempts, delay=delay, deadline=deadline)
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Dynamo describe_table failed while waiting for {self.table_name}: {e}") from e

    def acquire(self, lock_id: str):
        now = int(self.clock())
        item = {"LockID": lock_id, "Expires": now + int(self.ttl_seconds)}
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression=Attr("LockID").not_exists() | Attr("Expires").lt(now),
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise LockHeld(f"lock {lock_id} is already held")
            raise ProviderError(f"Dynamo acquire failed for {lock_id}: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"Dynamo acquire failed for {lock_id}: {e}") from e

    def release(self, lock_id: str):
        try:
            self.table.delete_item(Key={"LockID": lock_id})
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Dynamo release failed for {lock_id}: {e}") from e

    def is_held(self, lock_id: str) -> bool:
        try:
            resp = self.table.get_item(Key={"LockID": lock_id})
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Dynamo lock status check failed for {lock_id}: {e}") from e
        if "Item" not in resp:
            return False
        return int(resp["Item"]["Expires"]) >= int(self.clock())
