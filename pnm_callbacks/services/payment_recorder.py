"""
Payment Recorder

The one-time financial side effect of a first-seen, live /confirm callback.
The merchant's ledger itself lives elsewhere; recorders hand the confirmed
payment over to it.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict

from pnm_callbacks.models.callbacks import ConfirmCallback
from pnm_callbacks.services.sqs_service import SQSService, sqs_service
from pnm_callbacks.utils.exceptions import ConfigurationException, QueueException
from pnm_callbacks.utils.logging_config import get_logger
from pnm_callbacks.utils.retry import retry_async

logger = get_logger(__name__)


def payment_message(request: ConfirmCallback) -> Dict[str, Any]:
    """Confirmed payment as handed to the merchant's ledger"""
    return {
        "idempotency_key": request.idempotency_key,
        "pnm_order_identifier": request.pnm_order_identifier,
        "pnm_payment_identifier": request.pnm_payment_identifier,
        "site_order_identifier": request.site_order_identifier,
        "site_order_annotation": request.site_order_annotation,
        "status": request.status,
        "version": request.version,
        "callback_timestamp": request.timestamp,
        "confirmed_at": datetime.now(timezone.utc).isoformat(),
    }


class PaymentRecorder(ABC):
    """Performs the financial action for a confirmed payment"""

    @abstractmethod
    async def record_payment(self, request: ConfirmCallback) -> None:
        ...


class LoggingPaymentRecorder(PaymentRecorder):
    """Writes confirmed payments to the application log"""

    async def record_payment(self, request: ConfirmCallback) -> None:
        logger.info(
            f"Payment confirmed for order {request.site_order_identifier}",
            extra={"payment": payment_message(request)},
        )


class QueuePaymentRecorder(PaymentRecorder):
    """Publishes confirmed payments to an SQS queue, retrying transient failures"""

    def __init__(
        self,
        sqs: SQSService,
        max_attempts: int = 3,
        backoff_max: int = 2,
    ):
        self.sqs = sqs
        self._send = retry_async(
            max_attempts=max_attempts,
            backoff_base=2,
            backoff_max=backoff_max,
            retryable_exceptions=(QueueException,),
        )(self._send_once)

    async def _send_once(self, request: ConfirmCallback) -> Dict[str, Any]:
        return await self.sqs.send_message(
            message_body=payment_message(request),
            message_attributes={
                "event_type": "payment.confirmed",
                "pnm_order_identifier": request.pnm_order_identifier,
            },
            deduplication_id=request.idempotency_key,
        )

    async def record_payment(self, request: ConfirmCallback) -> None:
        response = await self._send(request)
        logger.info(
            "Confirmed payment queued",
            extra={
                "pnm_order_identifier": request.pnm_order_identifier,
                "sqs_message_id": response.get("MessageId"),
            },
        )


def build_payment_recorder(
    kind: str,
    max_attempts: int = 3,
    backoff_max: int = 2,
) -> PaymentRecorder:
    """
    Create the payment recorder for a configured kind.

    Raises:
        ConfigurationException: If the kind is unknown
    """
    if kind == "log":
        return LoggingPaymentRecorder()
    if kind == "sqs":
        return QueuePaymentRecorder(sqs_service, max_attempts, backoff_max)

    raise ConfigurationException(
        f"Unknown payment recorder: {kind}",
        details={"supported": ["log", "sqs"]},
    )
