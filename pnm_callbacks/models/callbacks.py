"""
Callback Models

Pydantic models for the processor's /authorize and /confirm callback
parameters, and the outcome a handler hands to the response builder.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic import ValidationError as PydanticValidationError
from starlette.responses import Response

from pnm_callbacks.utils.exceptions import ValidationException


def _param_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class CallbackRequest(BaseModel):
    """
    Parameters common to every callback.

    Unknown parameters are kept (``model_extra``) because the processor
    signs everything it sends.
    """

    model_config = ConfigDict(extra="allow")

    pnm_order_identifier: Optional[str] = Field(None, description="Processor order ID")
    pnm_payment_identifier: Optional[str] = Field(None, description="Processor payment ID")
    signature: str = Field(description="Signature over the other parameters")
    version: str = Field(description="Callback protocol version")
    timestamp: int = Field(
        ge=0, lt=2**63, description="Unix timestamp the callback was issued at"
    )
    site_order_identifier: Optional[str] = Field(None, description="Merchant order ID")
    site_order_annotation: Optional[str] = Field(None, description="Merchant annotation")
    test: Optional[bool] = Field(None, description="Test traffic flag")
    status: Optional[str] = Field(None, description="Payment status, e.g. 'decline'")

    _raw_params: Dict[str, str] = PrivateAttr(default_factory=dict)

    @field_validator(
        "pnm_order_identifier",
        "pnm_payment_identifier",
        "version",
        "site_order_identifier",
        "site_order_annotation",
        "status",
    )
    @classmethod
    def reject_control_characters(cls, value: Optional[str]) -> Optional[str]:
        """Identifiers are echoed into the XML response and must survive it verbatim"""
        if value is not None and any(ord(c) < 32 or c == "\x7f" for c in value):
            raise ValueError("control characters are not allowed")
        return value

    @classmethod
    def from_params(cls, params: Mapping[str, Any]):
        """
        Validate raw query parameters into a request model.

        Raises:
            ValidationException: If a parameter is missing or has the wrong type
        """
        try:
            request = cls.model_validate(dict(params))
        except PydanticValidationError as e:
            errors = [
                {
                    "field": ".".join(str(part) for part in error["loc"]),
                    "message": error["msg"],
                }
                for error in e.errors()
            ]
            raise ValidationException(
                "Invalid callback parameters",
                details={"errors": errors},
            ) from e

        request._raw_params = {str(key): _param_text(value) for key, value in params.items()}
        return request

    def signed_params(self) -> Dict[str, str]:
        """Parameters exactly as received, for signature computation"""
        if self._raw_params:
            return dict(self._raw_params)
        return {
            key: _param_text(value)
            for key, value in self.model_dump(exclude_none=True).items()
        }

    @property
    def is_test(self) -> bool:
        return bool(self.test)

    @property
    def is_declined(self) -> bool:
        return bool(self.status) and self.status.lower() == "decline"

    @property
    def idempotency_key(self) -> Optional[str]:
        """Identifier used to detect redelivery of the same payment"""
        return self.pnm_payment_identifier or self.pnm_order_identifier


class AuthorizeCallback(CallbackRequest):
    """/authorize parameters"""

    pass


class ConfirmCallback(CallbackRequest):
    """/confirm parameters"""

    pnm_order_identifier: str = Field(description="Processor order ID")


class OutcomeKind(str, Enum):
    """How a callback was resolved"""

    ACCEPTED = "accepted"
    DECLINED = "declined"
    TEST_IGNORED = "test_ignored"
    INTERCEPTED = "intercepted"
    INVALID_SIGNATURE = "invalid_signature"


@dataclass
class CallbackOutcome:
    """Result of a callback handler, consumed by the response builder"""

    kind: OutcomeKind
    version: str
    pnm_order_identifier: Optional[str] = None
    site_order_identifier: Optional[str] = None
    accept: Optional[bool] = None
    receipt: Optional[str] = None
    memo: Optional[str] = None
    test: bool = False
    duplicate: bool = False
    response: Optional[Response] = None

    @property
    def is_trusted(self) -> bool:
        return self.kind is not OutcomeKind.INVALID_SIGNATURE
