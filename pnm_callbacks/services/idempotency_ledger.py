"""
Idempotency Ledger

Durable record of the payments whose /confirm callback has been handled.
The processor may deliver the same confirmation more than once (retries,
races, duplicated network delivery); the ledger guarantees that only one
of those deliveries is told it came first.

Record lifecycle per idempotency key:

    UNSEEN --check_and_record--> RECORDED --mark_acknowledged--> ACKNOWLEDGED
                                    |
                                    +--release--> UNSEEN

``check_and_record`` is atomic per key: concurrent callers for the same key
get exactly one FIRST_SEEN. A RECORDED entry is a claim on the recording,
stamped with ``claimed_at``. A caller whose recording fails releases its
claim. A claim left behind (crash, or a write that landed after its caller
timed out) expires after ``lease_seconds``; the next check_and_record then
takes it over and is told FIRST_SEEN.

Storage failures and timeouts raise TransientStorageException and are never
reported as FIRST_SEEN or ALREADY_SEEN.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from pnm_callbacks.services.dynamodb_service import (
    ConditionalCheckFailedException,
    DynamoDBService,
    dynamodb_service,
)
from pnm_callbacks.services.redis_service import RedisService, redis_service
from pnm_callbacks.utils.exceptions import (
    ConfigurationException,
    TransientStorageException,
)
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_LEASE_SECONDS = 60


class IdempotencyState(str, Enum):
    """Ledger state of one payment"""

    UNSEEN = "unseen"
    RECORDED = "recorded"
    ACKNOWLEDGED = "acknowledged"


class LedgerStatus(str, Enum):
    """Result of check_and_record"""

    FIRST_SEEN = "first_seen"
    ALREADY_SEEN = "already_seen"


class IdempotencyLedger(ABC):
    """
    Base class for ledger backends.

    Subclasses implement the raw storage operations; this class bounds each
    of them with a timeout.
    """

    backend_name = "abstract"

    def __init__(
        self,
        timeout_seconds: float = 2.0,
        lease_seconds: Optional[float] = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.timeout_seconds = timeout_seconds
        self.lease_seconds = lease_seconds
        self._clock = clock

    def _lease_expired(self, claimed_at: Optional[float], now: float) -> bool:
        if not self.lease_seconds or claimed_at is None:
            return False
        return now - claimed_at >= self.lease_seconds

    async def connect(self) -> None:
        """Open backend connections, if any"""
        return None

    async def disconnect(self) -> None:
        """Close backend connections, if any"""
        return None

    async def check_and_record(self, key: str) -> LedgerStatus:
        """
        Atomically claim a key if it is unseen or its claim has expired.

        Args:
            key: Idempotency key (processor payment or order identifier)

        Returns:
            FIRST_SEEN if this call now holds the claim, ALREADY_SEEN otherwise

        Raises:
            TransientStorageException: If the backend failed or timed out
        """
        status = await self._bounded("check_and_record", key, self._check_and_record(key))
        logger.info(
            f"Ledger check for {key}: {status.value}",
            extra={"idempotency_key": key, "ledger_status": status.value},
        )
        return status

    async def mark_acknowledged(self, key: str) -> None:
        """Move a RECORDED key to ACKNOWLEDGED once its payment was recorded"""
        await self._bounded("mark_acknowledged", key, self._mark_acknowledged(key))

    async def release(self, key: str) -> bool:
        """
        Drop a RECORDED claim so a redelivery can record the payment.

        Returns:
            True if the key was RECORDED and is now UNSEEN
        """
        released = await self._bounded("release", key, self._release(key))
        logger.info(
            f"Ledger claim for {key} {'released' if released else 'not held'}",
            extra={"idempotency_key": key},
        )
        return released

    async def get_state(self, key: str) -> IdempotencyState:
        """Read the current state of a key"""
        return await self._bounded("get_state", key, self._get_state(key))

    async def _bounded(self, operation: str, key: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(
                f"Ledger {operation} timed out after {self.timeout_seconds}s",
                extra={"idempotency_key": key, "backend": self.backend_name},
            )
            raise TransientStorageException(
                f"Ledger {operation} timed out",
                details={"idempotency_key": key, "backend": self.backend_name},
            ) from e

    @abstractmethod
    async def _check_and_record(self, key: str) -> LedgerStatus:
        ...

    @abstractmethod
    async def _mark_acknowledged(self, key: str) -> None:
        ...

    @abstractmethod
    async def _release(self, key: str) -> bool:
        ...

    @abstractmethod
    async def _get_state(self, key: str) -> IdempotencyState:
        ...


@dataclass
class _Entry:
    state: IdempotencyState
    claimed_at: float


class InMemoryIdempotencyLedger(IdempotencyLedger):
    """Process-local ledger, for development and single-instance deployments"""

    backend_name = "memory"

    def __init__(
        self,
        timeout_seconds: float = 2.0,
        lease_seconds: Optional[float] = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(timeout_seconds, lease_seconds, clock)
        self._records: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def _check_and_record(self, key: str) -> LedgerStatus:
        async with self._lock:
            now = self._clock()
            entry = self._records.get(key)
            if entry is None:
                self._records[key] = _Entry(IdempotencyState.RECORDED, now)
                return LedgerStatus.FIRST_SEEN
            if entry.state is IdempotencyState.RECORDED and self._lease_expired(
                entry.claimed_at, now
            ):
                logger.warning(f"Taking over expired claim for {key}")
                entry.claimed_at = now
                return LedgerStatus.FIRST_SEEN
            return LedgerStatus.ALREADY_SEEN

    async def _mark_acknowledged(self, key: str) -> None:
        async with self._lock:
            if key not in self._records:
                raise KeyError(key)
            self._records[key].state = IdempotencyState.ACKNOWLEDGED

    async def _release(self, key: str) -> bool:
        async with self._lock:
            entry = self._records.get(key)
            if entry is None or entry.state is not IdempotencyState.RECORDED:
                return False
            del self._records[key]
            return True

    async def _get_state(self, key: str) -> IdempotencyState:
        async with self._lock:
            entry = self._records.get(key)
            return entry.state if entry else IdempotencyState.UNSEEN


class DynamoDBIdempotencyLedger(IdempotencyLedger):
    """Ledger stored in DynamoDB, using conditional writes for atomicity"""

    backend_name = "dynamodb"
    KEY_PREFIX = "pnm-ledger"
    SORT_KEY = "ledger"

    def __init__(
        self,
        dynamodb: DynamoDBService,
        timeout_seconds: float = 2.0,
        ttl_seconds: Optional[int] = None,
        lease_seconds: Optional[float] = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(timeout_seconds, lease_seconds, clock)
        self.dynamodb = dynamodb
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> Dict[str, str]:
        return {"pk": f"{self.KEY_PREFIX}#{key}", "sk": self.SORT_KEY}

    def _storage_error(self, operation: str, key: str, e: Exception) -> TransientStorageException:
        return TransientStorageException(
            f"DynamoDB ledger {operation} failed",
            details={"idempotency_key": key, "error": str(e)},
        )

    async def connect(self) -> None:
        try:
            await self.dynamodb.connect()
        except (ClientError, BotoCoreError) as e:
            raise TransientStorageException(f"DynamoDB connection failed: {e}") from e

    async def disconnect(self) -> None:
        await self.dynamodb.disconnect()

    async def _check_and_record(self, key: str) -> LedgerStatus:
        now = int(self._clock())
        timestamp = datetime.now(timezone.utc).isoformat()
        item = {
            **self._key(key),
            "idempotency_key": key,
            "state": IdempotencyState.RECORDED.value,
            "claimed_at": now,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        if self.ttl_seconds:
            item["ttl"] = now + self.ttl_seconds

        try:
            await self.dynamodb.put_item_if_not_exists(item)
            return LedgerStatus.FIRST_SEEN
        except ConditionalCheckFailedException:
            return await self._take_over_expired(key, now, timestamp)
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("write", key, e) from e

    async def _take_over_expired(self, key: str, now: int, timestamp: str) -> LedgerStatus:
        try:
            existing = await self.dynamodb.get_item(self._key(key))
            if (
                existing is None
                or existing.get("state") != IdempotencyState.RECORDED.value
                or "claimed_at" not in existing
                or not self._lease_expired(int(existing["claimed_at"]), now)
            ):
                return LedgerStatus.ALREADY_SEEN

            # Only the caller that still sees the old claim wins
            await self.dynamodb.update_item_if(
                self._key(key),
                {"claimed_at": now, "updated_at": timestamp},
                condition_expression="#state = :recorded AND #claimed = :old_claim",
                condition_names={"#state": "state", "#claimed": "claimed_at"},
                condition_values={
                    ":recorded": IdempotencyState.RECORDED.value,
                    ":old_claim": existing["claimed_at"],
                },
            )
        except ConditionalCheckFailedException:
            return LedgerStatus.ALREADY_SEEN
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("takeover", key, e) from e

        logger.warning(f"Took over expired claim for {key}")
        return LedgerStatus.FIRST_SEEN

    async def _mark_acknowledged(self, key: str) -> None:
        try:
            await self.dynamodb.update_item_if(
                self._key(key),
                {
                    "state": IdempotencyState.ACKNOWLEDGED.value,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        except ConditionalCheckFailedException as e:
            raise KeyError(key) from e
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("update", key, e) from e

    async def _release(self, key: str) -> bool:
        try:
            await self.dynamodb.delete_item_if(
                self._key(key),
                condition_expression="#state = :recorded",
                condition_names={"#state": "state"},
                condition_values={":recorded": IdempotencyState.RECORDED.value},
            )
        except ConditionalCheckFailedException:
            return False
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("release", key, e) from e
        return True

    async def _get_state(self, key: str) -> IdempotencyState:
        try:
            item = await self.dynamodb.get_item(self._key(key))
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("read", key, e) from e
        if item is None:
            return IdempotencyState.UNSEEN
        return IdempotencyState(item["state"])


# KEYS[1] ledger key; ARGV: claim value, now, ttl (0 = none), lease (0 = none)
# Returns 1 when created, 2 when an expired claim was taken over, 0 otherwise
CLAIM_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    if tonumber(ARGV[3]) > 0 then
        redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
    else
        redis.call('SET', KEYS[1], ARGV[1])
    end
    return 1
end
local state, claimed_at = string.match(current, '^(%a+):?(%d*)$')
if state == 'recorded' and claimed_at ~= '' and tonumber(ARGV[4]) > 0
        and tonumber(ARGV[2]) - tonumber(claimed_at) >= tonumber(ARGV[4]) then
    redis.call('SET', KEYS[1], ARGV[1], 'KEEPTTL')
    return 2
end
return 0
"""

# KEYS[1] ledger key; deletes it only while it is still a RECORDED claim
RELEASE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and string.sub(current, 1, 8) == 'recorded' then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisIdempotencyLedger(IdempotencyLedger):
    """
    Ledger stored in Redis, using server-side scripts for atomicity.

    Values are ``recorded:<claimed_at>`` or ``acknowledged``.
    """

    backend_name = "redis"
    KEY_PREFIX = "pnm-ledger"

    def __init__(
        self,
        redis: RedisService,
        timeout_seconds: float = 2.0,
        ttl_seconds: Optional[int] = None,
        lease_seconds: Optional[float] = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(timeout_seconds, lease_seconds, clock)
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:{key}"

    async def connect(self) -> None:
        await self.redis.connect()

    async def disconnect(self) -> None:
        await self.redis.disconnect()

    async def _check_and_record(self, key: str) -> LedgerStatus:
        now = int(self._clock())
        result = await self.redis.run_script(
            CLAIM_SCRIPT,
            keys=[self._key(key)],
            args=[
                f"{IdempotencyState.RECORDED.value}:{now}",
                now,
                self.ttl_seconds or 0,
                int(self.lease_seconds or 0),
            ],
        )
        if int(result) == 2:
            logger.warning(f"Took over expired claim for {key}")
        return LedgerStatus.FIRST_SEEN if int(result) else LedgerStatus.ALREADY_SEEN

    async def _mark_acknowledged(self, key: str) -> None:
        updated = await self.redis.set_if_present(
            self._key(key), IdempotencyState.ACKNOWLEDGED.value
        )
        if not updated:
            raise KeyError(key)

    async def _release(self, key: str) -> bool:
        result = await self.redis.run_script(RELEASE_SCRIPT, keys=[self._key(key)])
        return bool(int(result))

    async def _get_state(self, key: str) -> IdempotencyState:
        value = await self.redis.get(self._key(key))
        if value is None:
            return IdempotencyState.UNSEEN
        return IdempotencyState(value.split(":", 1)[0])


def build_idempotency_ledger(
    backend: str,
    timeout_seconds: float = 2.0,
    ttl_seconds: Optional[int] = None,
    lease_seconds: Optional[float] = DEFAULT_LEASE_SECONDS,
) -> IdempotencyLedger:
    """
    Create the ledger for a configured backend.

    Args:
        backend: "memory", "dynamodb" or "redis"
        timeout_seconds: Bound on every ledger operation
        ttl_seconds: Optional record retention for backends that support it
        lease_seconds: Age after which an unfinished claim may be taken over

    Raises:
        ConfigurationException: If the backend is unknown
    """
    if backend == "memory":
        return InMemoryIdempotencyLedger(timeout_seconds, lease_seconds)
    if backend == "dynamodb":
        return DynamoDBIdempotencyLedger(
            dynamodb_service, timeout_seconds, ttl_seconds, lease_seconds
        )
    if backend == "redis":
        return RedisIdempotencyLedger(
            redis_service, timeout_seconds, ttl_seconds, lease_seconds
        )

    raise ConfigurationException(
        f"Unknown ledger backend: {backend}",
        details={"supported": ["memory", "dynamodb", "redis"]},
    )
