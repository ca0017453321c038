"""
DynamoDB Service for the Idempotency Ledger

Stores one item per processed payment in the ledger table and exposes the
conditional writes the ledger relies on for atomic check-and-set.

Table Structure:
- Primary Key: pk (partition key)
- Sort Key: sk (sort key)
- Attributes:
  - state: ledger state of the payment
  - claimed_at: epoch seconds of the current recording claim
  - ttl: TTL timestamp for automatic expiration (optional)
  - created_at / updated_at: ISO timestamps
"""

import asyncio
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from pnm_callbacks.config import settings
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)


class ConditionalCheckFailedException(Exception):
    """A conditional write was rejected because its condition did not hold"""

    pass


class DynamoDBService:
    """DynamoDB table access with conditional writes"""

    def __init__(self, table_name: Optional[str] = None):
        """Initialize DynamoDB client and table"""
        self.client = None
        self.table = None
        self.table_name = table_name or settings.dynamodb_table_name
        self._connected = False

    async def connect(self):
        """Initialize DynamoDB connection"""
        if self._connected:
            return

        try:
            # Only use endpoint_url for local development (LocalStack), not in Lambda
            endpoint_url = settings.aws_endpoint_url if not settings.is_lambda else None
            self.client = boto3.resource(
                "dynamodb",
                region_name=settings.aws_region,
                endpoint_url=endpoint_url,
                config=Config(
                    connect_timeout=settings.ledger_timeout_seconds,
                    read_timeout=settings.ledger_timeout_seconds,
                    retries={"max_attempts": 2, "mode": "standard"},
                ),
            )

            self.table = self.client.Table(self.table_name)

            # Verify table exists
            await asyncio.to_thread(self.table.load)

            self._connected = True
            logger.info(f"Connected to DynamoDB table: {self.table_name}")

        except ClientError as e:
            logger.error(f"Failed to connect to DynamoDB: {e}")
            raise
        except BotoCoreError as e:
            logger.error(f"Unexpected error connecting to DynamoDB: {e}")
            raise

    async def disconnect(self):
        """Close DynamoDB connection"""
        if self.client:
            # boto3 resource doesn't need explicit close
            self._connected = False
            logger.info("DynamoDB connection closed")

    async def put_item_if_not_exists(self, item: Dict[str, Any]) -> None:
        """
        Put an item unless an item with the same partition key exists.

        Args:
            item: Item dict to store (must include pk and sk)

        Raises:
            ConditionalCheckFailedException: If the item already exists
            ClientError: On any other DynamoDB error
        """
        if not self._connected:
            await self.connect()

        try:
            await asyncio.to_thread(
                self.table.put_item,
                Item=item,
                ConditionExpression="attribute_not_exists(pk)",
            )
            logger.debug(f"Item stored in {self.table_name}: {item['pk']}")

        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise ConditionalCheckFailedException(item["pk"]) from e
            logger.error(f"Failed to put item in {self.table_name}: {e}")
            raise

    async def get_item(self, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Get an item by primary key.

        Args:
            key: Primary key dict ({"pk": ..., "sk": ...})

        Returns:
            Item dict if found, None otherwise
        """
        if not self._connected:
            await self.connect()

        try:
            response = await asyncio.to_thread(
                self.table.get_item, Key=key, ConsistentRead=True
            )
            return response.get("Item")

        except ClientError as e:
            logger.error(f"Failed to get item from {self.table_name}: {e}")
            raise

    async def update_item_if(
        self,
        key: Dict[str, Any],
        attributes: Dict[str, Any],
        condition_expression: str = "attribute_exists(pk)",
        condition_names: Optional[Dict[str, str]] = None,
        condition_values: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Set attributes on an item when a condition holds.

        Args:
            key: Primary key dict
            attributes: Attribute name to value mapping to SET
            condition_expression: DynamoDB condition (default: item exists)
            condition_names: Placeholders for attribute names in the condition
            condition_values: Placeholders for values in the condition

        Returns:
            Updated attributes

        Raises:
            ConditionalCheckFailedException: If the condition does not hold
        """
        if not self._connected:
            await self.connect()

        names = {f"#a{i}": name for i, name in enumerate(attributes)}
        values = {f":v{i}": value for i, value in enumerate(attributes.values())}
        names.update(condition_names or {})
        values.update(condition_values or {})
        update_expr = "SET " + ", ".join(
            f"#a{i} = :v{i}" for i in range(len(attributes))
        )

        try:
            response = await asyncio.to_thread(
                self.table.update_item,
                Key=key,
                UpdateExpression=update_expr,
                ConditionExpression=condition_expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="UPDATED_NEW",
            )
            return response.get("Attributes", {})

        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise ConditionalCheckFailedException(key["pk"]) from e
            logger.error(f"Failed to update item in {self.table_name}: {e}")
            raise

    async def delete_item_if(
        self,
        key: Dict[str, Any],
        condition_expression: str,
        condition_names: Optional[Dict[str, str]] = None,
        condition_values: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Delete an item when a condition holds.

        Raises:
            ConditionalCheckFailedException: If the condition does not hold
        """
        if not self._connected:
            await self.connect()

        params: Dict[str, Any] = {
            "Key": key,
            "ConditionExpression": condition_expression,
        }
        if condition_names:
            params["ExpressionAttributeNames"] = condition_names
        if condition_values:
            params["ExpressionAttributeValues"] = condition_values

        try:
            await asyncio.to_thread(self.table.delete_item, **params)
            logger.debug(f"Item deleted from {self.table_name}: {key['pk']}")

        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise ConditionalCheckFailedException(key["pk"]) from e
            logger.error(f"Failed to delete item from {self.table_name}: {e}")
            raise


# Singleton instance
dynamodb_service = DynamoDBService()
