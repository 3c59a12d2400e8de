"""
============================================================================
Failover Fetch - Primary/Backup Remote Reads with Bounded Retries
============================================================================

Reliability Level: L6 Critical
Traceability: All attempts logged with correlation_id

FETCH PROCEDURE:
    1. Try the primary URL up to `retries` times with exponential backoff.
       HTTP 429, HTTP 5xx, timeouts, transport errors and rate-limit bodies
       ({"error": "...rate limit..."}) are retryable.
    2. Other HTTP errors, undecodable JSON and extractor failures end the
       primary tier at once.
    3. Repeat with the backup URL.
    4. Both tiers failing raises DataUnavailable. No zero is fabricated.

ERROR CODES:
    - DATA-001: Every source failed
============================================================================
"""

from typing import Optional, Dict, Any, Callable, Awaitable, Tuple
import asyncio
import logging

import httpx

from app.errors import DataUnavailable
from app.ledger.rate_limiter import ExponentialBackoff, is_rate_limit_body
from data_ingestion.schemas import FetchResult, SourceMode

# Configure module logger
logger = logging.getLogger(__name__)


Extractor = Callable[[Any], Any]


class _Retryable(Exception):
    """Attempt failed in a way that may succeed on retry."""


class _SourceFailed(Exception):
    """Attempt failed in a way a retry will not fix."""


async def _attempt(
    client: httpx.AsyncClient,
    url: str,
    method: str,
    timeout: float,
    params: Optional[Dict[str, Any]],
    json_body: Optional[Dict[str, Any]],
    extract: Optional[Extractor]
) -> Any:
    try:
        response = await client.request(
            method, url, params=params, json=json_body, timeout=timeout
        )
    except (httpx.TimeoutException, httpx.TransportError) as e:
        raise _Retryable(f"{type(e).__name__}: {e}")

    if response.status_code == 429 or response.status_code >= 500:
        raise _Retryable(f"HTTP {response.status_code}")
    if response.status_code >= 400:
        raise _SourceFailed(f"HTTP {response.status_code}")

    try:
        payload = response.json()
    except ValueError as e:
        raise _SourceFailed(f"invalid JSON: {e}")

    if is_rate_limit_body(payload):
        raise _Retryable(f"rate limited: {payload.get('error') or payload.get('message')}")

    if extract is None:
        return payload
    try:
        return extract(payload)
    except (KeyError, IndexError, TypeError, ValueError, ArithmeticError) as e:
        raise _SourceFailed(f"unusable payload: {type(e).__name__}: {e}")


async def fetch_with_failover(
    client: httpx.AsyncClient,
    primary: str,
    backup: Optional[str] = None,
    retries: int = 3,
    timeout: float = 10.0,
    method: str = "GET",
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    extract: Optional[Extractor] = None,
    backup_extract: Optional[Extractor] = None,
    label: str = "fetch",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    correlation_id: Optional[str] = None
) -> FetchResult:
    """
    Read one value from the primary source, falling back to the backup.

    Args:
        primary: Full URL of the primary source
        backup: Full URL of the backup source (None = no backup)
        extract: Turns the JSON payload into the value; raising any of
            KeyError/IndexError/TypeError/ValueError marks the tier failed
        backup_extract: Extractor for the backup payload (defaults to extract)
        label: Field name used in logs and in DataUnavailable

    Returns:
        FetchResult with the extracted value and the tier that served it

    Raises:
        DataUnavailable: Both tiers failed (DATA-001)
    """
    tiers: Tuple[Tuple[SourceMode, Optional[str], Optional[Extractor]], ...] = (
        (SourceMode.PRIMARY, primary, extract),
        (SourceMode.BACKUP, backup, backup_extract or extract),
    )
    errors = []
    attempts = 0

    for mode, url, extractor in tiers:
        if not url:
            continue
        backoff = ExponentialBackoff()
        for attempt in range(1, max(1, retries) + 1):
            attempts += 1
            try:
                data = await _attempt(client, url, method, timeout, params, json_body, extractor)
            except _Retryable as e:
                errors.append(f"{mode.value}: {e}")
                logger.warning(
                    f"[FETCH] Retryable failure | label={label} | source={mode.value} | "
                    f"attempt={attempt}/{retries} | error={e} | correlation_id={correlation_id}"
                )
                if attempt < retries:
                    await sleep(backoff.get_delay())
                continue
            except _SourceFailed as e:
                errors.append(f"{mode.value}: {e}")
                logger.warning(
                    f"[FETCH] Source failed | label={label} | source={mode.value} | "
                    f"error={e} | correlation_id={correlation_id}"
                )
                break

            if mode == SourceMode.BACKUP:
                logger.warning(
                    f"[FETCH] Served by backup | label={label} | url={url} | "
                    f"correlation_id={correlation_id}"
                )
            else:
                logger.debug(f"[FETCH] Served by primary | label={label} | url={url}")
            return FetchResult(data=data, mode=mode, url=url, attempts=attempts)

    logger.error(
        f"[DATA-001] All sources failed | label={label} | attempts={attempts} | "
        f"errors={errors} | correlation_id={correlation_id}"
    )
    raise DataUnavailable(
        f"{label}: all sources failed ({'; '.join(errors) or 'no source configured'})",
        field_name=label,
    )
