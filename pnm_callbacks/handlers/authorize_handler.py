"""
Authorize Callback Handler

/authorize is advisory: the processor asks whether it may take a payment
for an order. Nothing is recorded, so repeated calls are harmless.
"""

import logging
from typing import Optional

from pnm_callbacks.handlers.base_handler import CallbackHandler
from pnm_callbacks.models.callbacks import AuthorizeCallback, CallbackOutcome, OutcomeKind
from pnm_callbacks.services.authorization_policy import AuthorizationPolicy
from pnm_callbacks.services.interceptors import CallbackInterceptor
from pnm_callbacks.services.signature_service import CallbackAuthenticator


class AuthorizeHandler(CallbackHandler):
    """Handles /authorize callbacks"""

    endpoint = "authorize"

    def __init__(
        self,
        authenticator: CallbackAuthenticator,
        policy: AuthorizationPolicy,
        interceptor: Optional[CallbackInterceptor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(authenticator, interceptor, logger)
        self.policy = policy

    async def handle(self, request: AuthorizeCallback) -> CallbackOutcome:
        """
        Decide whether the processor may accept a payment.

        Args:
            request: Validated /authorize parameters

        Returns:
            ACCEPTED or DECLINED with receipt and memo text, or the
            INTERCEPTED / INVALID_SIGNATURE outcome from screening
        """
        test = self._begin(request)

        screened = await self._screen(request)
        if screened is not None:
            return screened

        decision = await self.policy.decide(request)

        self.logger.info(
            f"Order: {request.site_order_identifier} will be "
            f"{'accepted' if decision.accept else 'declined'}",
            extra={
                "site_order_identifier": request.site_order_identifier,
                "pnm_order_identifier": request.pnm_order_identifier,
                "accept": decision.accept,
                "test": test,
            },
        )

        return CallbackOutcome(
            kind=OutcomeKind.ACCEPTED if decision.accept else OutcomeKind.DECLINED,
            version=request.version,
            pnm_order_identifier=request.pnm_order_identifier,
            site_order_identifier=request.site_order_identifier,
            accept=decision.accept,
            receipt=decision.receipt,
            memo=decision.memo,
            test=test,
        )
