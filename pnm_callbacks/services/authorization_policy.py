"""
Authorization Policy

Business decision for /authorize: should the processor take this payment?
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from pnm_callbacks.models.callbacks import AuthorizeCallback

ACCEPT_RECEIPT = "Thank you for your order"
DECLINE_RECEIPT = "Order declined"


@dataclass(frozen=True)
class AuthorizationDecision:
    accept: bool
    receipt: str
    memo: str


class AuthorizationPolicy(ABC):
    """Decides whether an authorize callback is accepted"""

    @abstractmethod
    async def decide(self, request: AuthorizeCallback) -> AuthorizationDecision:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderPrefixPolicy(AuthorizationPolicy):
    """
    Accepts orders whose site order identifier starts with a prefix.

    Declined orders get a memo naming the order so the processor can show
    it to the payer.
    """

    def __init__(self, prefix: str = "TEST", clock: Callable[[], datetime] = _utc_now):
        self.prefix = prefix
        self._clock = clock

    async def decide(self, request: AuthorizeCallback) -> AuthorizationDecision:
        site_order_identifier = request.site_order_identifier or ""

        if self.prefix and site_order_identifier.startswith(self.prefix):
            return AuthorizationDecision(
                accept=True,
                receipt=ACCEPT_RECEIPT,
                memo=self._clock().isoformat(),
            )

        return AuthorizationDecision(
            accept=False,
            receipt=DECLINE_RECEIPT,
            memo=f"Invalid Payment: {site_order_identifier}",
        )
