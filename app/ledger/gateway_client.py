# ============================================================================
# Stake Reward Distributor v1.0.0
# MultiversX Gateway Client - Settlement Ledger
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: LedgerInterface implementation over the MultiversX proxy gateway
#
# SOVEREIGN MANDATE:
#   - Exponential backoff on HTTP 429 / 5xx / timeouts / connection errors
#   - Primary gateway first, backup gateway when the primary is unreachable
#   - A ledger-level refusal is SubmissionRejected, never retried here
#   - A send that fails in transport is SubmissionUnconfirmed: it may
#     have reached the ledger, so it must not be treated as unsent
#
# Endpoints:
#   - GET  /address/{address}                       -> account nonce
#   - GET  /address/{address}/esdt/{token}          -> token balance
#   - POST /transaction/send                        -> txHash
#   - GET  /transaction/{hash}?withResults=true     -> status + logs
#
# Error Codes:
#   - GW-001: Gateway unreachable after retries
#   - GW-002: Unexpected gateway response
#   - SETL-002: Submission rejected by the ledger
#   - SETL-007: Send outcome unknown after transport failure
#
# ============================================================================

import base64
import logging
import time
from typing import Optional, Dict, Any, List, Callable

import requests
from requests.exceptions import (
    ChunkedEncodingError,
    ConnectionError as RequestsConnectionError,
    RequestException,
    Timeout,
)

from app.errors import SubmissionRejected, SubmissionUnconfirmed
from app.ledger.address import encode_address
from app.ledger.ledger_interface import (
    InspectionStatus,
    LedgerEvent,
    LedgerInspection,
    LedgerInterface,
)
from app.ledger.rate_limiter import ExponentialBackoff
from app.ledger.signer import SignerError, TransactionSigner
from app.ledger.transactions import TRANSFER_FUNCTION, TransferInstruction

logger = logging.getLogger(__name__)

TRANSFER_EVENT_IDENTIFIERS = (TRANSFER_FUNCTION, "ESDTLocalMint", "MultiESDTNFTTransfer")


class GatewayError(Exception):
    """Gateway unreachable or returned an unusable response (GW-001/GW-002)."""
    pass


def _decode_topic_text(topic: Optional[str]) -> Optional[str]:
    if not topic:
        return None
    try:
        return base64.b64decode(topic).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None


def _decode_topic_int(topic: Optional[str]) -> Optional[int]:
    if topic is None:
        return None
    raw = base64.b64decode(topic)
    return int.from_bytes(raw, "big") if raw else 0


def _decode_topic_address(topic: Optional[str]) -> Optional[str]:
    if not topic:
        return None
    raw = base64.b64decode(topic)
    if len(raw) != 32:
        return None
    return encode_address(raw)


def parse_transfer_event(event: Dict[str, Any]) -> LedgerEvent:
    """
    Reduce a raw log event to transfer fields.

    Transfer topics are [token, nonce, amount, receiver]; some gateways omit
    the nonce, in which case the amount is the second topic.
    """
    identifier = event.get("identifier", "")
    topics: List[str] = event.get("topics") or []
    if identifier not in TRANSFER_EVENT_IDENTIFIERS or not topics:
        return LedgerEvent(identifier=identifier)

    asset_id = _decode_topic_text(topics[0])
    if len(topics) >= 4:
        amount = _decode_topic_int(topics[2])
        receiver = _decode_topic_address(topics[3])
    else:
        amount = _decode_topic_int(topics[1]) if len(topics) > 1 else None
        receiver = _decode_topic_address(topics[2]) if len(topics) > 2 else None
    return LedgerEvent(
        identifier=identifier,
        asset_id=asset_id,
        amount=amount,
        receiver=receiver,
    )


def parse_transaction(reference_id: str, transaction: Dict[str, Any]) -> LedgerInspection:
    """Build a LedgerInspection from the gateway's transaction object."""
    raw_status = transaction.get("status")
    events: List[LedgerEvent] = []

    for event in (transaction.get("logs") or {}).get("events") or []:
        events.append(parse_transfer_event(event))

    for result in transaction.get("smartContractResults") or []:
        for event in (result.get("logs") or {}).get("events") or []:
            events.append(parse_transfer_event(event))

    return LedgerInspection(
        reference_id=reference_id,
        status=InspectionStatus.from_ledger(raw_status),
        events=events,
        raw_status=raw_status,
    )


class GatewayLedger(LedgerInterface):
    """
    MultiversX proxy gateway ledger.

    Reliability Level: SOVEREIGN TIER
    Thread Safety: inspect() may be called from verifier worker threads;
                   requests.Session connection pooling is shared
    Side Effects: Network I/O, sleeps during backoff

    Example Usage:
        signer = TransactionSigner.from_key_file(config.sender_key_file)
        with GatewayLedger(config.gateway_primary_url, signer=signer) as ledger:
            nonce = ledger.get_sequence(signer.address)
    """

    MAX_RETRIES = 3
    DEFAULT_TIMEOUT = 15.0

    def __init__(
        self,
        primary_url: str,
        backup_url: Optional[str] = None,
        signer: Optional[TransactionSigner] = None,
        chain_id: str = "1",
        gas_limit: int = 510000,
        gas_price: int = 1000000000,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        correlation_id: Optional[str] = None
    ):
        self.urls = [u.rstrip("/") for u in (primary_url, backup_url) if u]
        self.signer = signer
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.gas_price = gas_price
        self.timeout = timeout
        self.correlation_id = correlation_id
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

        logger.info(
            f"[GW] Gateway ledger initialized | "
            f"gateways={len(self.urls)} | chain_id={chain_id} | "
            f"signer={'yes' if signer else 'no'} | "
            f"correlation_id={correlation_id}"
        )

    # ========================================================================
    # LedgerInterface
    # ========================================================================

    def get_sequence(self, address: str) -> int:
        payload = self._request("GET", f"/address/{address}")
        try:
            return int(payload["data"]["account"]["nonce"])
        except (KeyError, TypeError, ValueError) as e:
            raise GatewayError(f"GW-002: No account nonce for {address}") from e

    def get_asset_balance(self, address: str, asset_id: str) -> int:
        payload = self._request("GET", f"/address/{address}/esdt/{asset_id}")
        token_data = (payload.get("data") or {}).get("tokenData") or {}
        return int(token_data.get("balance") or 0)

    def submit(
        self,
        sender: str,
        recipient: str,
        asset_id: str,
        amount_smallest_unit: int,
        sequence: int
    ) -> str:
        if self.signer is None:
            raise SubmissionRejected("No signer configured for live submission")

        instruction = TransferInstruction(
            sender=sender,
            receiver=recipient,
            asset_id=asset_id,
            amount_smallest_unit=amount_smallest_unit,
            nonce=sequence,
            gas_limit=self.gas_limit,
            gas_price=self.gas_price,
            chain_id=self.chain_id,
        )
        try:
            instruction.signature = self.signer.sign(instruction)
        except SignerError as e:
            raise SubmissionRejected(f"Cannot sign nonce {sequence}: {e}") from e

        try:
            payload = self._request(
                "POST", "/transaction/send", json_body=instruction.to_send_payload()
            )
        except GatewayError as e:
            logger.error(
                f"[SETL-007] Send outcome unknown | recipient={recipient} | "
                f"nonce={sequence} | error={e} | correlation_id={self.correlation_id}"
            )
            raise SubmissionUnconfirmed(
                f"Send of nonce {sequence} failed in transport, outcome unknown: {e}"
            ) from e

        error = payload.get("error")
        tx_hash = (payload.get("data") or {}).get("txHash")
        if error or not tx_hash:
            logger.warning(
                f"[SETL-002] Gateway rejected transfer | "
                f"recipient={recipient} | nonce={sequence} | error={error} | "
                f"correlation_id={self.correlation_id}"
            )
            raise SubmissionRejected(f"Gateway rejected nonce {sequence}: {error or 'no txHash'}")
        return tx_hash

    def inspect(self, reference_id: str) -> LedgerInspection:
        try:
            payload = self._request(
                "GET",
                f"/transaction/{reference_id}",
                params={"withResults": "true"},
            )
        except GatewayError as e:
            logger.warning(
                f"[GW-001] Inspection unavailable | reference_id={reference_id} | "
                f"error={e} | correlation_id={self.correlation_id}"
            )
            return LedgerInspection(reference_id=reference_id, status=InspectionStatus.UNKNOWN)

        transaction = (payload.get("data") or {}).get("transaction")
        if not transaction:
            return LedgerInspection(reference_id=reference_id, status=InspectionStatus.UNKNOWN)
        return parse_transaction(reference_id, transaction)

    # ========================================================================
    # Internal Methods
    # ========================================================================

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a request against each gateway in order, with exponential
        backoff on 429/5xx/timeouts inside each gateway.

        A 4xx other than 429 is returned as parsed JSON so that a ledger
        rejection reaches the caller.

        Raises:
            GatewayError: All gateways exhausted (GW-001)
        """
        last_error: Optional[str] = None

        for base_url in self.urls:
            backoff = ExponentialBackoff()
            url = f"{base_url}{path}"

            for attempt in range(self.MAX_RETRIES):
                try:
                    response = self._session.request(
                        method, url, params=params, json=json_body, timeout=self.timeout
                    )
                except (Timeout, RequestsConnectionError, ChunkedEncodingError) as e:
                    last_error = type(e).__name__
                    delay = backoff.get_delay()
                    logger.warning(
                        f"[GW] {last_error} | url={url} | "
                        f"attempt={attempt + 1}/{self.MAX_RETRIES} | "
                        f"backoff={delay:.1f}s | correlation_id={self.correlation_id}"
                    )
                    self._sleep(delay)
                    continue
                except RequestException as e:
                    # not retryable on this gateway (redirect loop, bad URL)
                    last_error = f"{type(e).__name__}: {e}"
                    logger.warning(
                        f"[GW] {last_error} | url={url} | "
                        f"correlation_id={self.correlation_id}"
                    )
                    break

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    delay = backoff.get_delay()
                    logger.warning(
                        f"[GW] {last_error} | url={url} | "
                        f"attempt={attempt + 1}/{self.MAX_RETRIES} | "
                        f"backoff={delay:.1f}s | correlation_id={self.correlation_id}"
                    )
                    self._sleep(delay)
                    continue

                try:
                    return response.json()
                except ValueError as e:
                    raise GatewayError(
                        f"GW-002: Non-JSON response from {url} (HTTP {response.status_code})"
                    ) from e

            logger.warning(
                f"[GW] Gateway exhausted, failing over | url={base_url} | "
                f"error={last_error} | correlation_id={self.correlation_id}"
            )

        logger.error(
            f"[GW-001] All gateways exhausted | path={path} | error={last_error} | "
            f"correlation_id={self.correlation_id}"
        )
        raise GatewayError(f"GW-001: All gateways exhausted for {path}: {last_error}")

    def close(self) -> None:
        self._session.close()
        logger.debug(f"[GW] Gateway ledger closed | correlation_id={self.correlation_id}")
