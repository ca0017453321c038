"""
Callback Endpoints

GET /authorize and GET /confirm, invoked by the processor. Parameters are
validated into typed models, handled, and answered with protocol XML. An
untrusted callback gets an empty body.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from pnm_callbacks.dependencies import (
    get_authorize_handler,
    get_confirm_handler,
    get_response_builder,
)
from pnm_callbacks.handlers.authorize_handler import AuthorizeHandler
from pnm_callbacks.handlers.confirm_handler import ConfirmHandler
from pnm_callbacks.models.callbacks import (
    AuthorizeCallback,
    CallbackOutcome,
    ConfirmCallback,
    OutcomeKind,
)
from pnm_callbacks.services.xml_response import XML_MEDIA_TYPE, XMLResponseBuilder
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["callbacks"])


def render_outcome(
    endpoint: str,
    outcome: CallbackOutcome,
    builder: XMLResponseBuilder,
) -> Response:
    """Turn a handler outcome into the HTTP response"""
    if outcome.kind is OutcomeKind.INTERCEPTED:
        return outcome.response

    body = builder.render(endpoint, outcome)
    if body is None:
        # Suppressed acknowledgment: the processor treats it as a rejection
        return Response(status_code=200)

    return Response(content=body, media_type=XML_MEDIA_TYPE)


@router.get("/authorize")
async def authorize_callback(
    request: Request,
    handler: AuthorizeHandler = Depends(get_authorize_handler),
    builder: XMLResponseBuilder = Depends(get_response_builder),
):
    """
    Processor asks whether a payment for an order may be accepted.

    Responds with payment_authorization_response (accept_payment yes/no).
    """
    callback = AuthorizeCallback.from_params(request.query_params)
    outcome = await handler.handle(callback)
    return render_outcome("authorize", outcome, builder)


@router.get("/confirm")
async def confirm_callback(
    request: Request,
    handler: ConfirmHandler = Depends(get_confirm_handler),
    builder: XMLResponseBuilder = Depends(get_response_builder),
):
    """
    Processor reports a completed payment.

    Responds with payment_confirmation_response for every trusted delivery,
    duplicates included. The payment itself is recorded once.
    """
    callback = ConfirmCallback.from_params(request.query_params)
    outcome = await handler.handle(callback)

    logger.info(
        f"Confirm callback resolved as {outcome.kind.value}",
        extra={
            "pnm_order_identifier": callback.pnm_order_identifier,
            "duplicate": outcome.duplicate,
            "test": outcome.test,
        },
    )

    return render_outcome("confirm", outcome, builder)
