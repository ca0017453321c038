"""
AWS SQS Service

Publishes confirmed payments to the queue the merchant's ledger consumes.
"""

import json
from typing import Any, Dict, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from pnm_callbacks.config import settings
from pnm_callbacks.utils.exceptions import QueueException
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)


class SQSService:
    """AWS SQS queue operations service"""

    def __init__(self, queue_url: Optional[str] = None):
        self.session = aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )
        self.queue_url = queue_url or settings.payment_queue_url

    async def send_message(
        self,
        message_body: Dict[str, Any],
        message_attributes: Optional[Dict[str, Any]] = None,
        deduplication_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a message to the SQS queue.

        Args:
            message_body: Message body as dictionary (will be JSON serialized)
            message_attributes: Optional message attributes
            deduplication_id: Deduplication and group ID for FIFO queues

        Returns:
            SQS response with MessageId

        Raises:
            QueueException: If send fails
        """
        try:
            async with self.session.client(
                "sqs", endpoint_url=settings.aws_endpoint_url
            ) as sqs:
                attributes = {}
                if message_attributes:
                    for key, value in message_attributes.items():
                        attributes[key] = {
                            "StringValue": str(value),
                            "DataType": "String",
                        }

                params = {
                    "QueueUrl": self.queue_url,
                    "MessageBody": json.dumps(message_body),
                    "MessageAttributes": attributes,
                }
                if deduplication_id and (self.queue_url or "").endswith(".fifo"):
                    params["MessageDeduplicationId"] = deduplication_id
                    params["MessageGroupId"] = deduplication_id

                response = await sqs.send_message(**params)

                message_id = response.get("MessageId")
                logger.info(
                    "Message sent to SQS successfully",
                    extra={
                        "message_id": message_id,
                        "queue_url": self.queue_url,
                    },
                )

                return response

        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error(
                f"Failed to send message to SQS: {error_code}",
                extra={"error": str(e), "queue_url": self.queue_url},
            )
            raise QueueException(
                f"Failed to send message to queue: {error_code}",
                details={"error": str(e)},
            )
        except BotoCoreError as e:
            logger.error(f"Unexpected error sending message to SQS: {e}")
            raise QueueException(f"Unexpected error: {e}")


# Global SQS service instance
sqs_service = SQSService()
