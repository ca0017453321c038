"""
Callback Signature Service

Recomputes the signature of an inbound callback from its parameters and the
shared secret, and compares it to the one the processor supplied.
"""

import hashlib
import hmac
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from pnm_callbacks.models.callbacks import CallbackRequest
from pnm_callbacks.services.freshness import FreshnessChecker
from pnm_callbacks.utils.exceptions import ConfigurationException, SignatureException
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)

SignatureAlgorithm = Callable[[Mapping[str, str], str], str]

# Never part of the signed payload
UNSIGNED_PARAMS = frozenset({"signature"})


def canonical_params(params: Mapping[str, str]) -> List[Tuple[str, str]]:
    """Signed parameters sorted by name"""
    return sorted(
        (name, value) for name, value in params.items() if name not in UNSIGNED_PARAMS
    )


def md5_signature(params: Mapping[str, str], secret: str) -> str:
    """
    PayNearMe v2 callback signature.

    MD5 hex digest of every parameter's name and value concatenated in
    name order, followed by the secret.
    """
    payload = "".join(f"{name}{value}" for name, value in canonical_params(params))
    return hashlib.md5(f"{payload}{secret}".encode("utf-8")).hexdigest()


def hmac_sha256_signature(params: Mapping[str, str], secret: str) -> str:
    """HMAC-SHA256 hex digest of ``name=value`` pairs joined with ``&``"""
    payload = "&".join(f"{name}={value}" for name, value in canonical_params(params))
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


SIGNATURE_ALGORITHMS: Dict[str, SignatureAlgorithm] = {
    "md5": md5_signature,
    "hmac-sha256": hmac_sha256_signature,
}


def get_signature_algorithm(name: str) -> SignatureAlgorithm:
    try:
        return SIGNATURE_ALGORITHMS[name.lower()]
    except KeyError:
        raise ConfigurationException(
            f"Unknown signature algorithm: {name}",
            details={"supported": sorted(SIGNATURE_ALGORITHMS)},
        )


class SignatureVerifier:
    """Verifies callback signatures with a shared secret"""

    def __init__(
        self,
        secret: str,
        algorithm: SignatureAlgorithm = md5_signature,
    ):
        if not secret:
            raise ConfigurationException("Callback signing secret is not configured")
        self._secret = secret
        self._algorithm = algorithm

    def expected_signature(self, request: CallbackRequest) -> str:
        return self._algorithm(request.signed_params(), self._secret)

    def verify(self, request: CallbackRequest) -> bool:
        """
        Check the signature supplied with a callback.

        Args:
            request: Validated callback request

        Returns:
            True if the supplied signature matches the expected one
        """
        expected = self.expected_signature(request)
        valid = hmac.compare_digest(
            expected.lower().encode("utf-8"),
            request.signature.lower().encode("utf-8"),
        )

        if not valid:
            logger.error(
                "Callback signature verification failed",
                extra={
                    "pnm_order_identifier": request.pnm_order_identifier,
                    "site_order_identifier": request.site_order_identifier,
                },
            )

        return valid


class CallbackAuthenticator:
    """
    Decides whether a callback can be trusted.

    A callback is trusted when its timestamp is fresh and its signature
    matches. A stale callback is untrusted even if its signature is correct.
    """

    def __init__(self, verifier: SignatureVerifier, freshness: FreshnessChecker):
        self.verifier = verifier
        self.freshness = freshness

    def authenticate(self, request: CallbackRequest) -> None:
        """
        Raises:
            SignatureException: If the callback is stale or its signature is wrong
        """
        if not self.freshness.is_fresh(request.timestamp):
            raise SignatureException(
                "Callback timestamp outside the accepted window",
                details={"timestamp": request.timestamp},
            )
        if not self.verifier.verify(request):
            raise SignatureException()

    def is_trusted(self, request: CallbackRequest) -> bool:
        try:
            self.authenticate(request)
        except SignatureException:
            return False
        return True


def build_authenticator(
    secret: Optional[str],
    algorithm_name: str = "md5",
    max_age_seconds: int = 300,
    max_future_seconds: int = 60,
) -> CallbackAuthenticator:
    """Create an authenticator from configuration values"""
    verifier = SignatureVerifier(secret or "", get_signature_algorithm(algorithm_name))
    freshness = FreshnessChecker(
        max_age_seconds=max_age_seconds,
        max_future_seconds=max_future_seconds,
    )
    return CallbackAuthenticator(verifier, freshness)
