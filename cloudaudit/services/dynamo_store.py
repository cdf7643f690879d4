"""
DynamoDB-backed result store.

Table layout: partition key ``customer_id`` (S), sort key ``item_key`` (S).
Each item carries the indexed fields at the top level and the full record
under ``payload``.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from cloudaudit.core.exceptions import ResultStoreError
from cloudaudit.schemas.records import ResultRecord
from cloudaudit.services.result_store import ResultStore
from cloudaudit.utils.item_keys import RecordType, current_prefix, history_prefix

logger = logging.getLogger(__name__)


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _to_dynamo(value: Any) -> Any:
    """DynamoDB rejects floats; route numbers through Decimal."""
    return json.loads(json.dumps(value), parse_float=Decimal)


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def create_table(dynamodb, table_name: str):
    """Create the item results table (used by local setup and tests)."""
    table = dynamodb.create_table(
        TableName=table_name,
        KeySchema=[
            {"AttributeName": "customer_id", "KeyType": "HASH"},
            {"AttributeName": "item_key", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "customer_id", "AttributeType": "S"},
            {"AttributeName": "item_key", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


class DynamoResultStore(ResultStore):
    """Result store on a DynamoDB table."""

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        session: Optional[boto3.session.Session] = None,
    ):
        """
        Initialize DynamoDB result store.

        Args:
            table_name: Table holding item results
            region_name: AWS region of the table
            endpoint_url: Override for DynamoDB Local
            session: boto3 session to use instead of the default one
        """
        session = session or boto3.session.Session(region_name=region_name)
        self.table_name = table_name
        self.table = session.resource("dynamodb", region_name=region_name, endpoint_url=endpoint_url).Table(table_name)

    def _item(self, record: ResultRecord) -> Dict[str, Any]:
        return {
            "customer_id": record.account_id,
            "item_key": record.item_key,
            "record_type": record.record_type.value,
            "check_id": record.check_id,
            "run_id": record.run_id,
            "inspection_time": record.inspection_time,
            "findings_count": len(record.findings),
            "payload": _to_dynamo(record.to_payload()),
        }

    @staticmethod
    def _record(item: Dict[str, Any]) -> ResultRecord:
        return ResultRecord.from_payload(_from_dynamo(item["payload"]))

    def put_history(self, record: ResultRecord) -> bool:
        if record.record_type != RecordType.HISTORY:
            raise ValueError("put_history expects a HISTORY record")
        try:
            self.table.put_item(
                Item=self._item(record),
                ConditionExpression=Attr("item_key").not_exists(),
            )
            return True
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                logger.info(f"History record already present, not overwriting: {record.account_id}/{record.item_key}")
                return False
            raise ResultStoreError(f"put_history failed for {record.item_key}: {e}") from e
        except BotoCoreError as e:
            raise ResultStoreError(f"put_history failed for {record.item_key}: {e}") from e

    def put_current(self, record: ResultRecord, force: bool = False) -> bool:
        if record.record_type != RecordType.CURRENT:
            raise ValueError("put_current expects a CURRENT record")
        params: Dict[str, Any] = {"Item": self._item(record)}
        if not force:
            params["ConditionExpression"] = (
                Attr("item_key").not_exists() | Attr("inspection_time").lte(record.inspection_time)
            )
        try:
            self.table.put_item(**params)
            return True
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                logger.info(
                    f"Skipping Current write for {record.account_id}/{record.item_key}: "
                    f"stored record is newer than {record.inspection_time}"
                )
                return False
            raise ResultStoreError(f"put_current failed for {record.item_key}: {e}") from e
        except BotoCoreError as e:
            raise ResultStoreError(f"put_current failed for {record.item_key}: {e}") from e

    def get(self, account_id: str, item_key: str) -> Optional[ResultRecord]:
        try:
            response = self.table.get_item(
                Key={"customer_id": account_id, "item_key": item_key},
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise ResultStoreError(f"get failed for {account_id}/{item_key}: {e}") from e
        item = response.get("Item")
        return self._record(item) if item else None

    def _query(self, **kwargs) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        limit = kwargs.pop("limit", None)
        while True:
            response = self.table.query(**kwargs)
            items.extend(response.get("Items", []))
            if limit is not None and len(items) >= limit:
                return items[:limit]
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def query_prefix(self, account_id: str, prefix: str, limit: Optional[int] = None) -> List[ResultRecord]:
        try:
            items = self._query(
                KeyConditionExpression=Key("customer_id").eq(account_id) & Key("item_key").begins_with(prefix),
                ScanIndexForward=True,
                ConsistentRead=True,
                limit=limit,
            )
        except (ClientError, BotoCoreError) as e:
            raise ResultStoreError(f"query failed for {account_id}/{prefix}: {e}") from e
        return [self._record(item) for item in items]

    def query_by_run(self, account_id: str, run_id: str) -> List[ResultRecord]:
        try:
            items = self._query(
                KeyConditionExpression=Key("customer_id").eq(account_id),
                FilterExpression=Attr("run_id").eq(run_id),
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise ResultStoreError(f"query by run failed for {account_id}/{run_id}: {e}") from e
        return [self._record(item) for item in items]

    def update_inspection_time(self, account_id: str, item_key: str, inspection_time: int) -> bool:
        try:
            self.table.update_item(
                Key={"customer_id": account_id, "item_key": item_key},
                UpdateExpression="SET #it = :t, #p.#it = :t",
                ConditionExpression=Attr("item_key").exists(),
                ExpressionAttributeNames={"#it": "inspection_time", "#p": "payload"},
                ExpressionAttributeValues={":t": inspection_time},
            )
            return True
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                return False
            raise ResultStoreError(f"timestamp update failed for {account_id}/{item_key}: {e}") from e
        except BotoCoreError as e:
            raise ResultStoreError(f"timestamp update failed for {account_id}/{item_key}: {e}") from e

    def list_accounts(self) -> List[str]:
        accounts = set()
        kwargs: Dict[str, Any] = {"ProjectionExpression": "customer_id"}
        try:
            while True:
                response = self.table.scan(**kwargs)
                accounts.update(item["customer_id"] for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as e:
            raise ResultStoreError(f"listing accounts failed: {e}") from e
        return sorted(accounts)

    def list_run_ids(self, account_id: str) -> List[str]:
        run_ids = set()
        try:
            for prefix in (current_prefix(), history_prefix()):
                items = self._query(
                    KeyConditionExpression=Key("customer_id").eq(account_id) & Key("item_key").begins_with(prefix),
                    ProjectionExpression="run_id",
                )
                run_ids.update(item["run_id"] for item in items)
        except (ClientError, BotoCoreError) as e:
            raise ResultStoreError(f"listing runs failed for {account_id}: {e}") from e
        return sorted(run_ids)

    def ping(self) -> bool:
        try:
            self.table.meta.client.describe_table(TableName=self.table_name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"DynamoDB ping failed for table {self.table_name}: {e}", exc_info=True)
            return False
