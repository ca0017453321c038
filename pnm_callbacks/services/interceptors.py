"""
Special-Condition Interceptors

Operational overrides consulted before any business decision or ledger
write. An interceptor that returns a response short-circuits the callback:
that response is sent as-is.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from starlette.responses import Response

from pnm_callbacks.models.callbacks import CallbackRequest
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)


class CallbackInterceptor(ABC):
    """Optional override of normal callback handling"""

    @abstractmethod
    async def intercept(self, endpoint: str, request: CallbackRequest) -> Optional[Response]:
        """
        Args:
            endpoint: "authorize" or "confirm"
            request: Validated callback request

        Returns:
            The response to send instead of the normal one, or None
        """
        ...


class NoOpInterceptor(CallbackInterceptor):
    async def intercept(self, endpoint: str, request: CallbackRequest) -> Optional[Response]:
        return None


class MaintenanceModeInterceptor(CallbackInterceptor):
    """
    Parks callbacks during a maintenance window.

    Answers with an empty body and a non-2xx status so the processor keeps
    the callback and redelivers it later.
    """

    def __init__(
        self,
        enabled: bool = False,
        endpoints: Iterable[str] = ("authorize", "confirm"),
        status_code: int = 503,
        retry_after_seconds: Optional[int] = 300,
    ):
        self.enabled = enabled
        self.endpoints = frozenset(endpoints)
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds

    async def intercept(self, endpoint: str, request: CallbackRequest) -> Optional[Response]:
        if not self.enabled or endpoint not in self.endpoints:
            return None

        logger.warning(
            f"Maintenance mode: /{endpoint} callback parked",
            extra={
                "endpoint": endpoint,
                "pnm_order_identifier": request.pnm_order_identifier,
            },
        )

        headers = {}
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return Response(status_code=self.status_code, headers=headers)


class CompositeInterceptor(CallbackInterceptor):
    """Consults interceptors in order; the first response wins"""

    def __init__(self, interceptors: Iterable[CallbackInterceptor]):
        self.interceptors: List[CallbackInterceptor] = list(interceptors)

    async def intercept(self, endpoint: str, request: CallbackRequest) -> Optional[Response]:
        for interceptor in self.interceptors:
            response = await interceptor.intercept(endpoint, request)
            if response is not None:
                return response
        return None
