"""
AWS Lambda Handler for the Callback Receiver

Runs the FastAPI application behind API Gateway through the Mangum adapter.
Each invocation is logged with the callback path and processor order ID so
Lambda logs can be matched to the processor's delivery attempts.
"""

from typing import Any, Dict

from mangum import Mangum

from pnm_callbacks.main import app
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)


# api_gateway_base_path is set to "/" to let Mangum handle stage prefixes automatically
handler = Mangum(app, lifespan="auto", api_gateway_base_path="/")


def _invocation_context(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    query = event.get("queryStringParameters") or {}
    return {
        "request_id": context.aws_request_id,
        "callback_path": event.get("rawPath") or event.get("path"),
        "pnm_order_identifier": query.get("pnm_order_identifier"),
    }


def lambda_handler(event, context):
    """
    Lambda entry point for processor callbacks.

    Args:
        event: API Gateway (HTTP API or REST) proxy event
        context: Lambda context with runtime information

    Returns:
        API Gateway response
    """
    invocation = _invocation_context(event, context)
    logger.info(
        "Callback invocation started",
        extra={**invocation, "remaining_time_ms": context.get_remaining_time_in_millis()},
    )

    try:
        response = handler(event, context)
    except Exception as e:
        logger.error(
            f"Callback invocation failed: {e}",
            exc_info=True,
            extra={**invocation, "error_type": type(e).__name__},
        )
        raise

    logger.info(
        "Callback invocation completed",
        extra={**invocation, "status_code": response.get("statusCode")},
    )
    return response


__all__ = ["handler", "lambda_handler"]
