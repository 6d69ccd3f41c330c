"""DynamoDB access for the rental tables.

Tables are named `{DYNAMODB_TABLE_PREFIX}-{table}` where the prefix defaults
to `rentals-{ENVIRONMENT}`:

    rentals                    rental transactions (version + lease lock)
    listings                   availability and lending stats
    users                      profile flags, GSIs on the processor IDs
    processor-webhook-events   webhook dedup ledger

Conditional writes are how every store enforces its invariants, so a failed
condition is reported as a value (False / None) rather than an exception.
Any other ClientError propagates.
"""

import os
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

_dynamodb_service_instance: "DynamoDBService | None" = None


def get_dynamodb_service(environment: str | None = None) -> "DynamoDBService":
    """Get the shared DynamoDBService (environment only applies on first call)."""
    global _dynamodb_service_instance
    if _dynamodb_service_instance is None:
        _dynamodb_service_instance = DynamoDBService(environment)
    return _dynamodb_service_instance


def reset_dynamodb_service() -> None:
    """Drop the shared instance so the next call builds a fresh resource (tests)."""
    global _dynamodb_service_instance
    _dynamodb_service_instance = None


def is_conditional_check_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _request(**params: Any) -> dict[str, Any]:
    """Build boto3 keyword arguments, leaving out unset optional ones."""
    return {name: value for name, value in params.items() if value is not None and value != {}}


class DynamoDBService:
    """Thin wrapper over the boto3 resource with prefixed table names."""

    def __init__(self, environment: str | None = None) -> None:
        self.environment = environment or os.getenv("ENVIRONMENT", "dev")
        self.name_prefix = os.getenv("DYNAMODB_TABLE_PREFIX", f"rentals-{self.environment}")
        self._dynamodb = boto3.resource("dynamodb")

    def table_name(self, table: str) -> str:
        return f"{self.name_prefix}-{table}"

    def _table(self, table: str) -> Any:
        return self._dynamodb.Table(self.table_name(table))

    def get_item(
        self, table: str, key: dict[str, Any], consistent_read: bool = True
    ) -> dict[str, Any] | None:
        """Read one item; strongly consistent unless told otherwise."""
        response = self._table(table).get_item(Key=key, ConsistentRead=consistent_read)
        item: dict[str, Any] | None = response.get("Item")
        return item

    def put_item(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: Any | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
    ) -> bool:
        """Write an item, optionally only when a condition holds.

        Returns:
            False if the condition failed, True otherwise
        """
        params = _request(
            Item=item,
            ConditionExpression=condition_expression,
            ExpressionAttributeValues=expression_attribute_values,
            ExpressionAttributeNames=expression_attribute_names,
        )
        try:
            self._table(table).put_item(**params)
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise
        return True

    def update_item(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any],
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply an update expression and return the item as written.

        Returns:
            All attributes after the update, or None if the condition failed
        """
        params = _request(
            Key=key,
            UpdateExpression=update_expression,
            ExpressionAttributeValues=expression_attribute_values,
            ExpressionAttributeNames=expression_attribute_names,
            ConditionExpression=condition_expression,
            ReturnValues="ALL_NEW",
        )
        try:
            response = self._table(table).update_item(**params)
        except ClientError as e:
            if is_conditional_check_failure(e):
                return None
            raise
        attrs: dict[str, Any] | None = response.get("Attributes")
        return attrs

    def delete_item(self, table: str, key: dict[str, Any]) -> None:
        self._table(table).delete_item(Key=key)

    def query(
        self,
        table: str,
        key_condition: Any,
        index_name: str | None = None,
        filter_expression: Any | None = None,
        limit: int | None = None,
        consistent_read: bool = False,
    ) -> list[dict[str, Any]]:
        """Query the base table or a GSI.

        `consistent_read` only applies to the base table; GSIs are eventually
        consistent. `limit` caps items evaluated, before the filter.
        """
        params = _request(
            KeyConditionExpression=key_condition,
            IndexName=index_name,
            FilterExpression=filter_expression,
            Limit=limit,
            ConsistentRead=True if consistent_read and not index_name else None,
        )
        response = self._table(table).query(**params)
        items: list[dict[str, Any]] = response.get("Items", [])
        return items

    def query_by_gsi(
        self,
        table: str,
        index_name: str,
        partition_key_name: str,
        partition_key_value: str,
    ) -> list[dict[str, Any]]:
        return self.query(
            table, Key(partition_key_name).eq(partition_key_value), index_name=index_name
        )
