"""
============================================================================
Stake Reward Distributor v1.0.0
Unit Tests - Primary/Backup Failover Fetch
============================================================================

Tests for:
- Primary served on first attempt
- Retry with backoff on 5xx, 429, timeouts and rate-limit bodies
- Immediate failover on 4xx and unusable payloads
- DataUnavailable when both tiers fail

Reliability Level: L6 Critical
============================================================================
"""

from decimal import Decimal

import httpx
import pytest

from app.errors import DataUnavailable
from data_ingestion.failover import fetch_with_failover
from data_ingestion.schemas import SourceMode, positive_decimal


PRIMARY = "https://primary.example/economics"
BACKUP = "https://backup.example/economics"


async def no_sleep(seconds: float) -> None:
    return None


def client_for(responses):
    """AsyncClient whose transport replays a per-host list of responses."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        queue = responses[request.url.host]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


def extract_price(payload):
    return positive_decimal(payload["price"], "price")


class TestFetchWithFailover:

    @pytest.mark.asyncio
    async def test_primary_success(self) -> None:
        client, calls = client_for({
            "primary.example": [httpx.Response(200, json={"price": "24.5"})],
        })
        async with client:
            result = await fetch_with_failover(
                client, PRIMARY, BACKUP, extract=extract_price, sleep=no_sleep,
            )
        assert result.data == Decimal("24.5")
        assert result.mode == SourceMode.PRIMARY
        assert result.attempts == 1
        assert calls == ["primary.example"]

    @pytest.mark.asyncio
    async def test_retries_server_errors(self) -> None:
        client, calls = client_for({
            "primary.example": [
                httpx.Response(503),
                httpx.Response(429),
                httpx.Response(200, json={"price": 25}),
            ],
        })
        async with client:
            result = await fetch_with_failover(
                client, PRIMARY, BACKUP, retries=3, extract=extract_price, sleep=no_sleep,
            )
        assert result.mode == SourceMode.PRIMARY
        assert result.attempts == 3
        assert result.data == Decimal("25")

    @pytest.mark.asyncio
    async def test_rate_limit_body_is_retried(self) -> None:
        client, _ = client_for({
            "primary.example": [
                httpx.Response(200, json={"error": "Rate limit exceeded"}),
                httpx.Response(200, json={"price": "1.5"}),
            ],
        })
        async with client:
            result = await fetch_with_failover(
                client, PRIMARY, BACKUP, extract=extract_price, sleep=no_sleep,
            )
        assert result.attempts == 2
        assert result.data == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_primary_then_backup(self) -> None:
        client, calls = client_for({
            "primary.example": [httpx.ConnectTimeout("timed out")],
            "backup.example": [httpx.Response(200, json={"price": "30"})],
        })
        async with client:
            result = await fetch_with_failover(
                client, PRIMARY, BACKUP, retries=2, extract=extract_price, sleep=no_sleep,
            )
        assert result.mode == SourceMode.BACKUP
        assert calls == ["primary.example", "primary.example", "backup.example"]

    @pytest.mark.asyncio
    async def test_client_error_fails_over_without_retry(self) -> None:
        client, calls = client_for({
            "primary.example": [httpx.Response(404, json={"error": "not found"})],
            "backup.example": [httpx.Response(200, json={"price": "30"})],
        })
        async with client:
            result = await fetch_with_failover(
                client, PRIMARY, BACKUP, retries=3, extract=extract_price, sleep=no_sleep,
            )
        assert result.mode == SourceMode.BACKUP
        assert calls == ["primary.example", "backup.example"]

    @pytest.mark.asyncio
    async def test_unusable_payload_fails_over(self) -> None:
        client, _ = client_for({
            "primary.example": [httpx.Response(200, json={"price": 0})],
            "backup.example": [httpx.Response(200, json={"value": "30"})],
        })
        async with client:
            result = await fetch_with_failover(
                client, PRIMARY, BACKUP,
                extract=extract_price,
                backup_extract=lambda payload: positive_decimal(payload["value"], "value"),
                sleep=no_sleep,
            )
        assert result.mode == SourceMode.BACKUP
        assert result.data == Decimal("30")

    @pytest.mark.asyncio
    async def test_invalid_json_fails_over(self) -> None:
        client, _ = client_for({
            "primary.example": [httpx.Response(200, content=b"<html>maintenance</html>")],
            "backup.example": [httpx.Response(200, json={"price": "2"})],
        })
        async with client:
            result = await fetch_with_failover(
                client, PRIMARY, BACKUP, extract=extract_price, sleep=no_sleep,
            )
        assert result.mode == SourceMode.BACKUP

    @pytest.mark.asyncio
    async def test_both_tiers_fail(self) -> None:
        client, _ = client_for({
            "primary.example": [httpx.Response(500)],
            "backup.example": [httpx.Response(404)],
        })
        async with client:
            with pytest.raises(DataUnavailable) as exc_info:
                await fetch_with_failover(
                    client, PRIMARY, BACKUP, retries=2, extract=extract_price,
                    label="base_asset_price", sleep=no_sleep,
                )
        assert exc_info.value.field_name == "base_asset_price"
        assert exc_info.value.error_code == "DATA-001"
        assert "all sources failed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_post_body_is_sent(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = request.content
            return httpx.Response(200, json={"data": {"data": {"returnData": []}}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await fetch_with_failover(
                client, "https://gw.example/vm-values/query", method="POST",
                json_body={"funcName": "getEntityUsers"}, sleep=no_sleep,
            )
        assert seen["method"] == "POST"
        assert b"getEntityUsers" in seen["body"]
        assert result.data == {"data": {"data": {"returnData": []}}}
