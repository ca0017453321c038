"""
Confirm Callback Handler

/confirm is binding: a payment happened. The processor can deliver the same
confirmation several times (retries, races), and every trusted delivery must
be acknowledged, but the payment may be recorded only once.

Flow:
1. Classify test traffic and log declined payments
2. Authenticate and consult the special-condition interceptor
3. Test or declined callbacks: acknowledge without touching the ledger
4. Live callbacks: check_and_record the idempotency key
   - FIRST_SEEN: record the payment, then mark the key acknowledged;
     if recording fails, release the claim so a redelivery can record it
   - ALREADY_SEEN: wait briefly for an in-flight recording to settle, then
     acknowledge the duplicate (ACKNOWLEDGED), claim again (released) or
     ask for redelivery (still RECORDED)
"""

import asyncio
import logging
from typing import Optional

from pnm_callbacks.handlers.base_handler import CallbackHandler
from pnm_callbacks.models.callbacks import CallbackOutcome, ConfirmCallback, OutcomeKind
from pnm_callbacks.services.idempotency_ledger import (
    IdempotencyLedger,
    IdempotencyState,
    LedgerStatus,
)
from pnm_callbacks.services.interceptors import CallbackInterceptor
from pnm_callbacks.services.payment_recorder import PaymentRecorder
from pnm_callbacks.services.signature_service import CallbackAuthenticator
from pnm_callbacks.utils.exceptions import (
    PaymentRecordingException,
    TransientStorageException,
)
from pnm_callbacks.utils.retry import retry_async


class ConfirmHandler(CallbackHandler):
    """Handles /confirm callbacks"""

    endpoint = "confirm"
    MAX_CLAIM_ATTEMPTS = 2

    def __init__(
        self,
        authenticator: CallbackAuthenticator,
        ledger: IdempotencyLedger,
        recorder: PaymentRecorder,
        interceptor: Optional[CallbackInterceptor] = None,
        logger: Optional[logging.Logger] = None,
        settle_timeout_seconds: float = 2.0,
        poll_interval_seconds: float = 0.05,
    ):
        super().__init__(authenticator, interceptor, logger)
        self.ledger = ledger
        self.recorder = recorder
        self.settle_timeout_seconds = settle_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    async def handle(self, request: ConfirmCallback) -> CallbackOutcome:
        """
        Acknowledge a payment confirmation, recording it at most once.

        Args:
            request: Validated /confirm parameters

        Returns:
            Outcome for the response builder

        Raises:
            TransientStorageException: If the ledger could not be consulted
            PaymentRecordingException: If the payment could not be recorded
        """
        test = self._begin(request)

        if request.is_declined:
            self.logger.warning(
                f"Transaction {request.site_order_identifier} was declined - "
                f"do not post, still respond to callback.",
                extra={
                    "site_order_identifier": request.site_order_identifier,
                    "pnm_order_identifier": request.pnm_order_identifier,
                },
            )

        screened = await self._screen(request)
        if screened is not None:
            return screened

        if test:
            return self._acknowledge(request, OutcomeKind.TEST_IGNORED, test=True)

        if request.is_declined:
            return self._acknowledge(request, OutcomeKind.DECLINED)

        key = request.idempotency_key
        for _ in range(self.MAX_CLAIM_ATTEMPTS):
            status = await self.ledger.check_and_record(key)

            if status is LedgerStatus.FIRST_SEEN:
                await self._record_payment(key, request)
                return self._acknowledge(request, OutcomeKind.ACCEPTED)

            state = await self._wait_until_settled(key)
            if state is IdempotencyState.ACKNOWLEDGED:
                self.logger.info(
                    f"Duplicate /confirm for {key} - responding without posting",
                    extra={
                        "idempotency_key": key,
                        "pnm_order_identifier": request.pnm_order_identifier,
                    },
                )
                return self._acknowledge(request, OutcomeKind.ACCEPTED, duplicate=True)

            if state is IdempotencyState.RECORDED:
                # No acknowledgment until the payment is known to be recorded
                self.logger.warning(
                    f"Payment {key} is still being recorded - asking for redelivery",
                    extra={"idempotency_key": key},
                )
                raise TransientStorageException(
                    "Payment recording in progress",
                    details={"idempotency_key": key},
                )

            # UNSEEN: the claim was released after a failed recording

        raise TransientStorageException(
            "Could not claim payment for recording",
            details={"idempotency_key": key},
        )

    async def _wait_until_settled(self, key: str) -> IdempotencyState:
        """Poll a RECORDED key until it leaves that state or the settle time runs out"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settle_timeout_seconds

        state = await self.ledger.get_state(key)
        while state is IdempotencyState.RECORDED and loop.time() < deadline:
            await asyncio.sleep(self.poll_interval_seconds)
            state = await self.ledger.get_state(key)
        return state

    async def _record_payment(self, key: str, request: ConfirmCallback) -> None:
        try:
            await self.recorder.record_payment(request)
        except Exception as e:
            self.logger.error(
                f"Failed to record payment for {key}: {e}",
                exc_info=True,
                extra={
                    "idempotency_key": key,
                    "pnm_order_identifier": request.pnm_order_identifier,
                },
            )
            await self._release_claim(key)
            raise PaymentRecordingException(
                "Failed to record confirmed payment",
                idempotency_key=key,
                details={"error": str(e)},
            ) from e

        try:
            await self._mark_acknowledged(key)
        except (TransientStorageException, KeyError) as e:
            # The payment is recorded; acknowledging it is still correct
            self.logger.error(
                f"Payment recorded but ledger not marked acknowledged for {key}: {e}",
                extra={"idempotency_key": key},
            )

        self.logger.info(
            f"Payment {key} recorded",
            extra={
                "idempotency_key": key,
                "pnm_order_identifier": request.pnm_order_identifier,
                "site_order_identifier": request.site_order_identifier,
            },
        )

    async def _release_claim(self, key: str) -> None:
        try:
            await self.ledger.release(key)
        except TransientStorageException as e:
            self.logger.error(
                f"Could not release claim for {key}; it is retaken once its lease expires: "
                f"{e.message}",
                extra={"idempotency_key": key},
            )

    @retry_async(
        max_attempts=3,
        backoff_base=2,
        backoff_max=1,
        retryable_exceptions=(TransientStorageException,),
    )
    async def _mark_acknowledged(self, key: str) -> None:
        await self.ledger.mark_acknowledged(key)

    def _acknowledge(
        self,
        request: ConfirmCallback,
        kind: OutcomeKind,
        test: bool = False,
        duplicate: bool = False,
    ) -> CallbackOutcome:
        return CallbackOutcome(
            kind=kind,
            version=request.version,
            pnm_order_identifier=request.pnm_order_identifier,
            site_order_identifier=request.site_order_identifier,
            test=test,
            duplicate=duplicate,
        )
