"""
Shared Callback Handling

Steps common to /authorize and /confirm: test-mode classification,
authentication and special-condition interception.
"""

import logging
from typing import Optional

from pnm_callbacks.models.callbacks import CallbackOutcome, CallbackRequest, OutcomeKind
from pnm_callbacks.services.interceptors import CallbackInterceptor, NoOpInterceptor
from pnm_callbacks.services.signature_service import CallbackAuthenticator
from pnm_callbacks.utils.logging_config import bind_callback_context, get_logger


def is_test_request(
    endpoint: str,
    request: CallbackRequest,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """
    Classify a callback as test traffic.

    Test callbacks must still be answered but never handled as real
    financial events.
    """
    if not request.is_test:
        return False

    (logger or get_logger(__name__)).warning(
        f"This /{endpoint} request is a test! Do not handle tests as real financial events!",
        extra={
            "endpoint": endpoint,
            "pnm_order_identifier": request.pnm_order_identifier,
        },
    )
    return True


class CallbackHandler:
    """Base class for the per-endpoint callback workflows"""

    endpoint = "callback"

    def __init__(
        self,
        authenticator: CallbackAuthenticator,
        interceptor: Optional[CallbackInterceptor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.authenticator = authenticator
        self.interceptor = interceptor or NoOpInterceptor()
        self.logger = logger or get_logger(f"handlers.{self.endpoint}")

    def _begin(self, request: CallbackRequest) -> bool:
        """Bind log context for this callback and classify test traffic"""
        bind_callback_context(self.endpoint, request.pnm_order_identifier)
        return is_test_request(self.endpoint, request, self.logger)

    async def _screen(self, request: CallbackRequest) -> Optional[CallbackOutcome]:
        """
        Authenticate and consult the interceptor.

        Returns:
            A final outcome (intercepted or untrusted), or None when normal
            handling should continue
        """
        trusted = self.authenticator.is_trusted(request)

        override = await self.interceptor.intercept(self.endpoint, request)
        if override is not None:
            self.logger.info(
                f"/{self.endpoint} callback intercepted",
                extra={"pnm_order_identifier": request.pnm_order_identifier},
            )
            return CallbackOutcome(
                kind=OutcomeKind.INTERCEPTED,
                version=request.version,
                pnm_order_identifier=request.pnm_order_identifier,
                site_order_identifier=request.site_order_identifier,
                test=request.is_test,
                response=override,
            )

        if not trusted:
            self.logger.error(
                f"Rejected /{self.endpoint} callback with invalid signature",
                extra={
                    "pnm_order_identifier": request.pnm_order_identifier,
                    "site_order_identifier": request.site_order_identifier,
                },
            )
            return CallbackOutcome(
                kind=OutcomeKind.INVALID_SIGNATURE,
                version=request.version,
                test=request.is_test,
            )

        return None
