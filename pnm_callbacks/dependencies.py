"""
Application Wiring

Builds the callback components from settings. Each getter returns a cached
singleton and doubles as a FastAPI dependency, so tests can replace any of
them through ``app.dependency_overrides``.
"""

from functools import lru_cache

from pnm_callbacks.config import settings
from pnm_callbacks.handlers.authorize_handler import AuthorizeHandler
from pnm_callbacks.handlers.confirm_handler import ConfirmHandler
from pnm_callbacks.services.authorization_policy import AuthorizationPolicy, OrderPrefixPolicy
from pnm_callbacks.services.idempotency_ledger import (
    IdempotencyLedger,
    build_idempotency_ledger,
)
from pnm_callbacks.services.interceptors import (
    CallbackInterceptor,
    CompositeInterceptor,
    MaintenanceModeInterceptor,
)
from pnm_callbacks.services.payment_recorder import PaymentRecorder, build_payment_recorder
from pnm_callbacks.services.signature_service import (
    CallbackAuthenticator,
    build_authenticator,
)
from pnm_callbacks.services.xml_response import XMLResponseBuilder
from pnm_callbacks.utils.request_timer import RequestTimer


@lru_cache()
def get_authenticator() -> CallbackAuthenticator:
    return build_authenticator(
        settings.pnm_secret,
        algorithm_name=settings.signature_algorithm,
        max_age_seconds=settings.callback_max_age_seconds,
        max_future_seconds=settings.callback_max_future_seconds,
    )


@lru_cache()
def get_interceptor() -> CallbackInterceptor:
    return CompositeInterceptor(
        [
            MaintenanceModeInterceptor(
                enabled=settings.maintenance_mode,
                endpoints=settings.maintenance_endpoints,
                status_code=settings.maintenance_status_code,
                retry_after_seconds=settings.maintenance_retry_after_seconds,
            ),
        ]
    )


@lru_cache()
def get_idempotency_ledger() -> IdempotencyLedger:
    return build_idempotency_ledger(
        settings.ledger_backend,
        timeout_seconds=settings.ledger_timeout_seconds,
        ttl_seconds=settings.ledger_ttl_seconds,
        lease_seconds=settings.ledger_claim_lease_seconds,
    )


@lru_cache()
def get_payment_recorder() -> PaymentRecorder:
    return build_payment_recorder(
        settings.payment_recorder,
        max_attempts=settings.recorder_max_attempts,
        backoff_max=settings.recorder_backoff_max,
    )


@lru_cache()
def get_authorization_policy() -> AuthorizationPolicy:
    return OrderPrefixPolicy(prefix=settings.authorize_accept_prefix)


@lru_cache()
def get_authorize_handler() -> AuthorizeHandler:
    return AuthorizeHandler(
        authenticator=get_authenticator(),
        policy=get_authorization_policy(),
        interceptor=get_interceptor(),
    )


@lru_cache()
def get_confirm_handler() -> ConfirmHandler:
    return ConfirmHandler(
        authenticator=get_authenticator(),
        ledger=get_idempotency_ledger(),
        recorder=get_payment_recorder(),
        interceptor=get_interceptor(),
        settle_timeout_seconds=settings.confirm_settle_timeout_seconds,
    )


@lru_cache()
def get_response_builder() -> XMLResponseBuilder:
    return XMLResponseBuilder(namespace=settings.xml_namespace)


@lru_cache()
def get_request_timer() -> RequestTimer:
    return RequestTimer(threshold_ms=settings.slow_request_threshold_ms)
