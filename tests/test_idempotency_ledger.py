"""
Unit tests for the Idempotency Ledger.

Tests check-and-record atomicity, state transitions, timeout handling and
the DynamoDB and Redis backends.
"""

import asyncio
from unittest.mock import AsyncMock

import boto3
import pytest
from moto import mock_aws

from pnm_callbacks.services.dynamodb_service import DynamoDBService
from pnm_callbacks.services.idempotency_ledger import (
    CLAIM_SCRIPT,
    RELEASE_SCRIPT,
    DynamoDBIdempotencyLedger,
    IdempotencyState,
    InMemoryIdempotencyLedger,
    LedgerStatus,
    RedisIdempotencyLedger,
    build_idempotency_ledger,
)
from pnm_callbacks.utils.exceptions import ConfigurationException, TransientStorageException


class SlowLedger(InMemoryIdempotencyLedger):
    """In-memory ledger whose backend never answers in time"""

    async def _check_and_record(self, key):
        await asyncio.sleep(5)
        return await super()._check_and_record(key)



class FakeClock:
    """Clock advanced by hand, in epoch seconds"""

    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


class LateAnswerLedger(InMemoryIdempotencyLedger):
    """In-memory ledger that writes the claim, then answers too late"""

    answer_late = True

    async def _check_and_record(self, key):
        status = await super()._check_and_record(key)
        if self.answer_late:
            await asyncio.sleep(5)
        return status


@pytest.mark.asyncio
class TestInMemoryIdempotencyLedger:
    """Test suite for the in-memory backend"""

    async def test_first_then_already_seen(self, ledger):
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

    async def test_keys_are_independent(self, ledger):
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN
        assert await ledger.check_and_record("PAY-2") is LedgerStatus.FIRST_SEEN

    async def test_concurrent_callers_get_one_first_seen(self, ledger):
        """
        Test linearizability per key.

        Fifty concurrent deliveries of the same key must produce exactly one
        FIRST_SEEN.
        """
        results = await asyncio.gather(
            *(ledger.check_and_record("PAY-RACE") for _ in range(50))
        )

        assert results.count(LedgerStatus.FIRST_SEEN) == 1
        assert results.count(LedgerStatus.ALREADY_SEEN) == 49

    async def test_state_transitions(self, ledger):
        assert await ledger.get_state("PAY-1") is IdempotencyState.UNSEEN

        await ledger.check_and_record("PAY-1")
        assert await ledger.get_state("PAY-1") is IdempotencyState.RECORDED

        await ledger.mark_acknowledged("PAY-1")
        assert await ledger.get_state("PAY-1") is IdempotencyState.ACKNOWLEDGED

    async def test_acknowledged_key_is_still_already_seen(self, ledger):
        await ledger.check_and_record("PAY-1")
        await ledger.mark_acknowledged("PAY-1")

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

    async def test_mark_unknown_key_fails(self, ledger):
        with pytest.raises(KeyError):
            await ledger.mark_acknowledged("PAY-UNKNOWN")

    async def test_timeout_is_transient_failure(self):
        """Test that a slow backend never reports FIRST_SEEN"""
        slow = SlowLedger(timeout_seconds=0.05)

        with pytest.raises(TransientStorageException) as exc_info:
            await slow.check_and_record("PAY-1")

        assert exc_info.value.error_code == "LEDGER_UNAVAILABLE"
        assert exc_info.value.details["idempotency_key"] == "PAY-1"

    async def test_release_recorded_key(self, ledger):
        await ledger.check_and_record("PAY-1")

        assert await ledger.release("PAY-1") is True
        assert await ledger.get_state("PAY-1") is IdempotencyState.UNSEEN
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN

    async def test_release_keeps_acknowledged_key(self, ledger):
        await ledger.check_and_record("PAY-1")
        await ledger.mark_acknowledged("PAY-1")

        assert await ledger.release("PAY-1") is False
        assert await ledger.release("PAY-UNKNOWN") is False
        assert await ledger.get_state("PAY-1") is IdempotencyState.ACKNOWLEDGED

    async def test_claim_held_within_lease(self):
        clock = FakeClock()
        ledger = InMemoryIdempotencyLedger(lease_seconds=60, clock=clock)

        await ledger.check_and_record("PAY-1")
        clock.now += 59

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

    async def test_expired_claim_is_taken_over_once(self):
        clock = FakeClock()
        ledger = InMemoryIdempotencyLedger(lease_seconds=60, clock=clock)

        await ledger.check_and_record("PAY-1")
        clock.now += 60

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

    async def test_acknowledged_key_never_taken_over(self):
        clock = FakeClock()
        ledger = InMemoryIdempotencyLedger(lease_seconds=60, clock=clock)

        await ledger.check_and_record("PAY-1")
        await ledger.mark_acknowledged("PAY-1")
        clock.now += 3600

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

    async def test_claim_written_after_timeout_expires(self):
        """
        Test that a write landing after its caller timed out is recoverable.

        The caller sees a transient failure; the orphaned claim blocks
        redeliveries until its lease runs out.
        """
        clock = FakeClock()
        ledger = LateAnswerLedger(timeout_seconds=0.05, lease_seconds=60, clock=clock)

        with pytest.raises(TransientStorageException):
            await ledger.check_and_record("PAY-1")

        ledger.answer_late = False
        assert await ledger.get_state("PAY-1") is IdempotencyState.RECORDED
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

        clock.now += 60
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN



@pytest.fixture
def ledger_table(monkeypatch):
    """Moto-backed DynamoDB ledger table"""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")

    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        dynamodb.create_table(
            TableName="test-pnm-ledger",
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        yield dynamodb.Table("test-pnm-ledger")


@pytest.mark.asyncio
class TestDynamoDBIdempotencyLedger:
    """Test suite for the DynamoDB backend"""

    def _ledger(self, ttl_seconds=None, clock=None):
        return DynamoDBIdempotencyLedger(
            DynamoDBService(table_name="test-pnm-ledger"),
            timeout_seconds=5.0,
            ttl_seconds=ttl_seconds,
            lease_seconds=60,
            clock=clock or FakeClock(),
        )

    async def test_first_then_already_seen(self, ledger_table):
        ledger = self._ledger()

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

    async def test_item_layout(self, ledger_table):
        ledger = self._ledger(ttl_seconds=86400)

        await ledger.check_and_record("PAY-1")

        item = ledger_table.get_item(Key={"pk": "pnm-ledger#PAY-1", "sk": "ledger"})["Item"]
        assert item["state"] == "recorded"
        assert item["idempotency_key"] == "PAY-1"
        assert int(item["claimed_at"]) == 1_700_000_000
        assert "ttl" in item

    async def test_state_transitions(self, ledger_table):
        ledger = self._ledger()

        assert await ledger.get_state("PAY-1") is IdempotencyState.UNSEEN
        await ledger.check_and_record("PAY-1")
        await ledger.mark_acknowledged("PAY-1")

        assert await ledger.get_state("PAY-1") is IdempotencyState.ACKNOWLEDGED

    async def test_mark_unknown_key_fails(self, ledger_table):
        with pytest.raises(KeyError):
            await self._ledger().mark_acknowledged("PAY-UNKNOWN")

    async def test_missing_table_is_transient_failure(self, ledger_table):
        ledger = DynamoDBIdempotencyLedger(
            DynamoDBService(table_name="no-such-table"), timeout_seconds=5.0
        )

        with pytest.raises(TransientStorageException):
            await ledger.connect()


    async def test_release_recorded_item(self, ledger_table):
        ledger = self._ledger()
        await ledger.check_and_record("PAY-1")

        assert await ledger.release("PAY-1") is True
        assert await ledger.get_state("PAY-1") is IdempotencyState.UNSEEN

    async def test_release_keeps_acknowledged_item(self, ledger_table):
        ledger = self._ledger()
        await ledger.check_and_record("PAY-1")
        await ledger.mark_acknowledged("PAY-1")

        assert await ledger.release("PAY-1") is False
        assert await ledger.get_state("PAY-1") is IdempotencyState.ACKNOWLEDGED

    async def test_expired_claim_is_taken_over(self, ledger_table):
        clock = FakeClock()
        ledger = self._ledger(clock=clock)
        await ledger.check_and_record("PAY-1")

        clock.now += 30
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

        clock.now += 30
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN
        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

        item = ledger_table.get_item(Key={"pk": "pnm-ledger#PAY-1", "sk": "ledger"})["Item"]
        assert int(item["claimed_at"]) == int(clock.now)


@pytest.fixture
def mock_redis_service():
    """Mock Redis service"""
    mock = AsyncMock()
    mock.run_script.return_value = 1
    mock.set_if_present.return_value = True
    mock.get.return_value = None
    return mock


@pytest.mark.asyncio
class TestRedisIdempotencyLedger:
    """Test suite for the Redis backend"""

    async def test_created_claim_is_first_seen(self, mock_redis_service):
        ledger = RedisIdempotencyLedger(
            mock_redis_service, ttl_seconds=3600, lease_seconds=60, clock=FakeClock()
        )

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN
        mock_redis_service.run_script.assert_awaited_once_with(
            CLAIM_SCRIPT,
            keys=["pnm-ledger:PAY-1"],
            args=["recorded:1700000000", 1700000000, 3600, 60],
        )

    async def test_existing_claim_is_already_seen(self, mock_redis_service):
        mock_redis_service.run_script.return_value = 0
        ledger = RedisIdempotencyLedger(mock_redis_service)

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.ALREADY_SEEN

    async def test_taken_over_claim_is_first_seen(self, mock_redis_service):
        mock_redis_service.run_script.return_value = 2
        ledger = RedisIdempotencyLedger(mock_redis_service)

        assert await ledger.check_and_record("PAY-1") is LedgerStatus.FIRST_SEEN

    async def test_storage_error_propagates(self, mock_redis_service):
        mock_redis_service.run_script.side_effect = TransientStorageException("down")
        ledger = RedisIdempotencyLedger(mock_redis_service)

        with pytest.raises(TransientStorageException):
            await ledger.check_and_record("PAY-1")

    async def test_get_state_reads_value(self, mock_redis_service):
        ledger = RedisIdempotencyLedger(mock_redis_service)

        mock_redis_service.get.return_value = "acknowledged"
        assert await ledger.get_state("PAY-1") is IdempotencyState.ACKNOWLEDGED

        mock_redis_service.get.return_value = "recorded:1700000000"
        assert await ledger.get_state("PAY-1") is IdempotencyState.RECORDED

    async def test_release_runs_compare_and_delete(self, mock_redis_service):
        ledger = RedisIdempotencyLedger(mock_redis_service)

        assert await ledger.release("PAY-1") is True
        mock_redis_service.run_script.assert_awaited_once_with(
            RELEASE_SCRIPT, keys=["pnm-ledger:PAY-1"]
        )

        mock_redis_service.run_script.return_value = 0
        assert await ledger.release("PAY-1") is False

    async def test_mark_unknown_key_fails(self, mock_redis_service):
        mock_redis_service.set_if_present.return_value = False
        ledger = RedisIdempotencyLedger(mock_redis_service)

        with pytest.raises(KeyError):
            await ledger.mark_acknowledged("PAY-1")


def test_build_memory_ledger():
    ledger = build_idempotency_ledger("memory", timeout_seconds=3.0, lease_seconds=90)

    assert isinstance(ledger, InMemoryIdempotencyLedger)
    assert ledger.timeout_seconds == 3.0
    assert ledger.lease_seconds == 90


def test_build_unknown_ledger():
    with pytest.raises(ConfigurationException):
        build_idempotency_ledger("postgres")
