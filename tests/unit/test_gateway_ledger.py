"""
============================================================================
Stake Reward Distributor v1.0.0
Unit Tests - Gateway Ledger
============================================================================

Tests for:
- Account nonce and token balance reads
- Signed transfer submission and rejection handling
- Transaction inspection and transfer-event decoding
- Backoff on 429/5xx and failover to the backup gateway
- Transport failures during a send reported as outcome unknown

Reliability Level: SOVEREIGN TIER
============================================================================
"""

import base64
from unittest.mock import MagicMock

import pytest
import requests

from app.errors import SubmissionRejected, SubmissionUnconfirmed
from app.ledger.address import encode_address
from app.ledger.gateway_client import (
    GatewayError,
    GatewayLedger,
    parse_transaction,
    parse_transfer_event,
)
from app.ledger.ledger_interface import InspectionStatus
from app.ledger.signer import TransactionSigner


ASSET = "COLS-9d91b7"
RECEIVER = encode_address(b"\x05" * 32)


def _response(status_code: int, payload=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _transfer_event(amount: int, receiver: str = RECEIVER, with_nonce: bool = True) -> dict:
    topics = [_b64(ASSET.encode())]
    if with_nonce:
        topics.append("")
    topics.append(_b64(amount.to_bytes((amount.bit_length() + 7) // 8, "big")))
    topics.append(_b64(bytes(b"\x05" * 32)))
    return {"identifier": "ESDTTransfer", "topics": topics}


@pytest.fixture
def session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def ledger(session, sleeps) -> GatewayLedger:
    signer = TransactionSigner(bytes(range(32)))
    return GatewayLedger(
        "https://primary.example/gateway",
        "https://backup.example",
        signer=signer,
        session=session,
        sleep=sleeps.append,
        correlation_id="test-gw",
    )


class TestGatewayReads:

    def test_get_sequence(self, ledger, session) -> None:
        session.request.return_value = _response(200, {"data": {"account": {"nonce": 17}}})
        assert ledger.get_sequence("erd1sender") == 17

        method, url = session.request.call_args[0]
        assert method == "GET"
        assert url == "https://primary.example/gateway/address/erd1sender"

    def test_get_sequence_missing_nonce(self, ledger, session) -> None:
        session.request.return_value = _response(200, {"data": {}})
        with pytest.raises(GatewayError):
            ledger.get_sequence("erd1sender")

    def test_get_asset_balance(self, ledger, session) -> None:
        session.request.return_value = _response(
            200, {"data": {"tokenData": {"balance": "2500000000000000000"}}}
        )
        assert ledger.get_asset_balance("erd1sender", ASSET) == 2500000000000000000

    def test_missing_token_is_zero_balance(self, ledger, session) -> None:
        session.request.return_value = _response(200, {"data": {}, "error": "account has no token"})
        assert ledger.get_asset_balance("erd1sender", ASSET) == 0


class TestGatewayRetries:

    def test_backs_off_then_succeeds(self, ledger, session, sleeps) -> None:
        session.request.side_effect = [
            _response(429, {"error": "too many requests"}),
            _response(502, {}),
            _response(200, {"data": {"account": {"nonce": 3}}}),
        ]
        assert ledger.get_sequence("erd1sender") == 3
        assert len(sleeps) == 2

    def test_fails_over_to_backup(self, ledger, session) -> None:
        session.request.side_effect = [_response(503, {})] * GatewayLedger.MAX_RETRIES + [
            _response(200, {"data": {"account": {"nonce": 9}}}),
        ]
        assert ledger.get_sequence("erd1sender") == 9
        assert session.request.call_args[0][1].startswith("https://backup.example")

    def test_all_gateways_exhausted(self, ledger, session) -> None:
        session.request.return_value = _response(500, {})
        with pytest.raises(GatewayError, match="GW-001"):
            ledger.get_sequence("erd1sender")
        assert session.request.call_count == 2 * GatewayLedger.MAX_RETRIES

    def test_non_retryable_transport_error_fails_over(self, ledger, session, sleeps) -> None:
        session.request.side_effect = [
            requests.exceptions.TooManyRedirects("redirect loop"),
            _response(200, {"data": {"account": {"nonce": 4}}}),
        ]
        assert ledger.get_sequence("erd1sender") == 4
        assert session.request.call_count == 2
        assert sleeps == []

    def test_invalid_url_everywhere(self, ledger, session) -> None:
        session.request.side_effect = requests.exceptions.InvalidURL("bad url")
        with pytest.raises(GatewayError, match="InvalidURL"):
            ledger.get_sequence("erd1sender")
        assert session.request.call_count == 2

    def test_non_json_body(self, ledger, session) -> None:
        session.request.return_value = _response(200)
        with pytest.raises(GatewayError, match="GW-002"):
            ledger.get_sequence("erd1sender")


class TestGatewaySubmit:

    def test_signed_submission(self, ledger, session) -> None:
        session.request.return_value = _response(200, {"data": {"txHash": "ab" * 32}})
        reference = ledger.submit(ledger.signer.address, RECEIVER, ASSET, 10**18, 5)

        assert reference == "ab" * 32
        body = session.request.call_args[1]["json"]
        assert body["nonce"] == 5
        assert body["receiver"] == RECEIVER
        assert len(body["signature"]) == 128

    def test_gateway_error_is_rejection(self, ledger, session) -> None:
        session.request.return_value = _response(400, {"error": "lowerNonceInTx", "data": None})
        with pytest.raises(SubmissionRejected, match="lowerNonceInTx"):
            ledger.submit(ledger.signer.address, RECEIVER, ASSET, 10**18, 5)

    def test_unreachable_gateway_is_unconfirmed(self, ledger, session) -> None:
        session.request.return_value = _response(500, {})
        with pytest.raises(SubmissionUnconfirmed, match="SETL-007"):
            ledger.submit(ledger.signer.address, RECEIVER, ASSET, 10**18, 5)

    def test_send_timeout_is_unconfirmed(self, ledger, session, sleeps) -> None:
        session.request.side_effect = requests.exceptions.ReadTimeout("read timed out")
        with pytest.raises(SubmissionUnconfirmed) as exc_info:
            ledger.submit(ledger.signer.address, RECEIVER, ASSET, 10**18, 5)

        assert "nonce 5" in exc_info.value.message
        assert session.request.call_count == 2 * GatewayLedger.MAX_RETRIES
        assert len(sleeps) == 2 * GatewayLedger.MAX_RETRIES

    def test_broken_response_stream_is_unconfirmed(self, ledger, session) -> None:
        session.request.side_effect = requests.exceptions.ChunkedEncodingError("broken")
        with pytest.raises(SubmissionUnconfirmed):
            ledger.submit(ledger.signer.address, RECEIVER, ASSET, 10**18, 5)

    def test_signing_failure_is_rejection(self, ledger, session) -> None:
        with pytest.raises(SubmissionRejected, match="Cannot sign nonce 5"):
            ledger.submit(RECEIVER, RECEIVER, ASSET, 10**18, 5)
        session.request.assert_not_called()

    def test_no_signer(self, session) -> None:
        unsigned = GatewayLedger("https://primary.example", session=session)
        with pytest.raises(SubmissionRejected):
            unsigned.submit("erd1sender", RECEIVER, ASSET, 1, 0)


class TestGatewayInspect:

    def test_success_with_transfer_event(self, ledger, session) -> None:
        session.request.return_value = _response(200, {"data": {"transaction": {
            "status": "success",
            "logs": {"events": [_transfer_event(10**18)]},
        }}})
        inspection = ledger.inspect("ab" * 32)

        assert inspection.status == InspectionStatus.SUCCESS
        event = inspection.events[0]
        assert event.asset_id == ASSET
        assert event.amount == 10**18
        assert event.receiver == RECEIVER

    def test_events_from_contract_results(self) -> None:
        inspection = parse_transaction("ref", {
            "status": "success",
            "smartContractResults": [{"logs": {"events": [_transfer_event(7, with_nonce=False)]}}],
        })
        assert inspection.events[0].amount == 7
        assert inspection.events[0].receiver == RECEIVER

    def test_unknown_transaction(self, ledger, session) -> None:
        session.request.return_value = _response(200, {"data": {}})
        assert ledger.inspect("ref").status == InspectionStatus.UNKNOWN

    def test_unreachable_is_unknown(self, ledger, session) -> None:
        session.request.return_value = _response(503, {})
        assert ledger.inspect("ref").status == InspectionStatus.UNKNOWN

    def test_non_transfer_event(self) -> None:
        event = parse_transfer_event({"identifier": "completedTxEvent", "topics": ["eA=="]})
        assert event.asset_id is None
        assert event.amount is None

    @pytest.mark.parametrize("raw,expected", [
        ("success", InspectionStatus.SUCCESS),
        ("executed", InspectionStatus.SUCCESS),
        ("pending", InspectionStatus.PENDING),
        ("fail", InspectionStatus.FAILED),
        ("invalid", InspectionStatus.FAILED),
        (None, InspectionStatus.UNKNOWN),
    ])
    def test_status_mapping(self, raw, expected) -> None:
        assert InspectionStatus.from_ledger(raw) == expected
