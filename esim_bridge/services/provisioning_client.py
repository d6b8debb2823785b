"""
eSIMAccess Provisioning Client
===============================

Places one eSIM order per fulfillment attempt and polls the provider until
the ordered profiles are allocated.

Flow:
  1. POST order  {transactionId, packageInfoList: [{packageCode, count}]}
     → acknowledgement with orderNo (or a provider error code)
  2. POST query  {orderNo} (falls back to {transactionId})
     → repeated on a backoff schedule: a short burst, then a steady interval,
       bounded by max_attempts
  3. Each poll response goes through classify() exactly once:
       IN_PROGRESS / INCOMPLETE / TRANSIENT → keep polling
       FATAL                                → ProvisioningError(QUERY_REJECTED)
       SUCCESS                              → first `quantity` eSIMs

The order call is never retried: a second placement could allocate (and bill)
a second profile. The client keeps no state between calls.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

import httpx

from esim_bridge.config import settings
from esim_bridge.core.errors import BridgeError
from esim_bridge.core.structured_logging import transaction_id_var

logger = logging.getLogger(__name__)

MAX_QUANTITY = 10
QUERY_PAGE_SIZE = 20

# Provider errorCode values (normalised by _error_code) that mean "no error"
_OK_CODES = {None, "0"}


class ProvisioningErrorKind(str, Enum):
    ORDER_REJECTED = "order_rejected"
    QUERY_REJECTED = "query_rejected"
    NETWORK_FAILURE = "network_failure"
    TIMEOUT = "timeout"


_KIND_CODES = {
    ProvisioningErrorKind.ORDER_REJECTED: "ESB-PRV-001",
    ProvisioningErrorKind.QUERY_REJECTED: "ESB-PRV-002",
    ProvisioningErrorKind.NETWORK_FAILURE: "ESB-PRV-003",
    ProvisioningErrorKind.TIMEOUT: "ESB-PRV-004",
}


class ProvisioningError(BridgeError):
    """A fulfillment attempt ended without usable eSIMs."""

    def __init__(
        self,
        kind: ProvisioningErrorKind,
        message: str,
        provider_code: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> None:
        self.kind = kind
        self.provider_code = provider_code
        ctx = {"kind": kind.value, **(context or {})}
        if provider_code is not None:
            ctx["provider_code"] = provider_code
        super().__init__(_KIND_CODES[kind], detail=message, context=ctx)


class PollOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    FATAL = "fatal"
    INCOMPLETE = "incomplete"
    TRANSIENT = "transient"
    SUCCESS = "success"


@dataclass(frozen=True)
class ProvisionedEsim:
    iccid: str
    install_url: Optional[str] = None


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    esims: Tuple[ProvisionedEsim, ...] = ()
    provider_code: Optional[str] = None
    message: Optional[str] = None


def new_transaction_id() -> str:
    """Millisecond timestamp + random suffix: sortable in logs, not guessable."""
    return f"SA_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _parse_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_code(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw).strip() or None


def _provider_error(payload: Any) -> Optional[Tuple[Optional[str], str]]:
    """Return (errorCode, errorMsg) if the payload reports a failure, else None."""
    if not isinstance(payload, dict):
        return None
    code = _error_code(payload.get("errorCode"))
    if payload.get("success") is False or code not in _OK_CODES:
        message = payload.get("errorMsg") or payload.get("message") or "no error message"
        return (None if code in _OK_CODES else code), str(message)
    return None


def _ready_esims(payload: Any) -> List[ProvisionedEsim]:
    """Profiles with an ICCID, de-duplicated, in provider order."""
    obj = payload.get("obj", payload) if isinstance(payload, dict) else payload
    if isinstance(obj, dict):
        items = obj.get("esimList") or obj.get("cards") or []
    elif isinstance(obj, list):
        items = obj
    else:
        items = []

    esims: List[ProvisionedEsim] = []
    seen = set()
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        iccid = item.get("iccid")
        if not isinstance(iccid, str):
            continue
        iccid = iccid.strip()
        if not iccid or iccid in seen:
            continue
        seen.add(iccid)
        url = item.get("shortUrl") or item.get("qrCodeUrl") or item.get("qrcodeUrl") or None
        esims.append(ProvisionedEsim(iccid=iccid, install_url=url))
    return esims


def classify(
    response: Optional[httpx.Response],
    quantity: int,
    in_progress_codes: Iterable[str] = ("200010",),
) -> PollResult:
    """Map one query response (None = no response at all) to a PollOutcome."""
    if response is None or response.status_code >= 500:
        return PollResult(PollOutcome.TRANSIENT)

    in_progress = {str(c) for c in in_progress_codes}
    payload = _parse_json(response)
    error = _provider_error(payload)

    if error is not None and error[0] in in_progress:
        return PollResult(PollOutcome.IN_PROGRESS, provider_code=error[0], message=error[1])

    if not response.is_success:
        code, message = error if error else (None, response.reason_phrase or "")
        return PollResult(
            PollOutcome.FATAL,
            provider_code=code,
            message=f"HTTP {response.status_code}: {message}",
        )

    if payload is None:
        # 2xx with an unreadable body: treat like a dropped response
        return PollResult(PollOutcome.TRANSIENT)

    if error is not None:
        return PollResult(PollOutcome.FATAL, provider_code=error[0], message=error[1])

    esims = _ready_esims(payload)
    if len(esims) >= quantity:
        return PollResult(PollOutcome.SUCCESS, esims=tuple(esims[:quantity]))
    return PollResult(PollOutcome.INCOMPLETE)


class EsimAccessClient:
    """Async client for the eSIMAccess open API."""

    def __init__(
        self,
        access_code: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        burst_delays: Optional[List[float]] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        in_progress_codes: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._access_code = access_code or settings.esim_access_code or ""
        self._base_url = (base_url or settings.esim_api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.esim_request_timeout_s
        self._burst_delays = list(burst_delays if burst_delays is not None else settings.esim_poll_burst_delays_s)
        self._poll_interval = poll_interval if poll_interval is not None else settings.esim_poll_interval_s
        self._max_attempts = max_attempts if max_attempts is not None else settings.esim_max_poll_attempts
        self._in_progress_codes = list(in_progress_codes or settings.esim_in_progress_codes)
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    def backoff_delay(self, attempt: int) -> float:
        """Wait before poll number `attempt` (1-based)."""
        if attempt <= len(self._burst_delays):
            return self._burst_delays[attempt - 1]
        return self._poll_interval

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"RT-AccessCode": self._access_code, "Content-Type": "application/json"},
            transport=self._transport,
        )

    async def order_and_poll(self, package_code: str, quantity: int) -> List[ProvisionedEsim]:
        """Order `quantity` eSIMs of `package_code` and wait until all are allocated.

        Raises:
            ProvisioningError: order rejected, query rejected, provider
                unreachable, or poll budget exhausted.
        """
        if not 1 <= quantity <= MAX_QUANTITY:
            raise ValueError(f"quantity must be 1..{MAX_QUANTITY}, got {quantity}")

        transaction_id = new_transaction_id()
        tx_token = transaction_id_var.set(transaction_id)
        try:
            async with self._http_client() as client:
                order_no = await self._place_order(client, transaction_id, package_code, quantity)
                return await self._poll(client, transaction_id, order_no, quantity)
        finally:
            transaction_id_var.reset(tx_token)

    async def _place_order(
        self,
        client: httpx.AsyncClient,
        transaction_id: str,
        package_code: str,
        quantity: int,
    ) -> Optional[str]:
        """Place the order once. Returns the provider orderNo when present."""
        logger.info("Placing eSIM order: package=%s quantity=%d", package_code, quantity)
        try:
            resp = await client.post(
                settings.esim_order_path,
                json={
                    "transactionId": transaction_id,
                    "packageInfoList": [{"packageCode": package_code, "count": quantity}],
                },
            )
        except httpx.TransportError as e:
            raise ProvisioningError(
                ProvisioningErrorKind.NETWORK_FAILURE,
                f"order request failed: {type(e).__name__}: {e}",
            ) from e

        payload = _parse_json(resp)
        error = _provider_error(payload)
        if not resp.is_success:
            code, message = error if error else (None, resp.reason_phrase or "")
            raise ProvisioningError(
                ProvisioningErrorKind.ORDER_REJECTED,
                f"HTTP {resp.status_code}: {message}",
                provider_code=code,
            )
        if not isinstance(payload, dict):
            raise ProvisioningError(
                ProvisioningErrorKind.ORDER_REJECTED,
                "order acknowledgement is not a JSON object",
            )
        if error is not None:
            raise ProvisioningError(
                ProvisioningErrorKind.ORDER_REJECTED,
                f"provider error {error[0] or 'success=false'}: {error[1]}",
                provider_code=error[0],
            )

        obj = payload.get("obj")
        order_no = obj.get("orderNo") if isinstance(obj, dict) else None
        logger.info("eSIM order accepted: order_no=%s", order_no or "(none, querying by transactionId)")
        return order_no

    async def _poll(
        self,
        client: httpx.AsyncClient,
        transaction_id: str,
        order_no: Optional[str],
        quantity: int,
    ) -> List[ProvisionedEsim]:
        query: dict = {"orderNo": order_no} if order_no else {"transactionId": transaction_id}
        query["pager"] = {"pageNum": 1, "pageSize": QUERY_PAGE_SIZE}

        started = self._clock()
        for attempt in range(1, self._max_attempts + 1):
            await self._sleep(self.backoff_delay(attempt))

            resp: Optional[httpx.Response]
            try:
                resp = await client.post(settings.esim_query_path, json=query)
            except httpx.TransportError as e:
                logger.warning(
                    "eSIM query transport error (attempt %d/%d): %s: %s",
                    attempt, self._max_attempts, type(e).__name__, e,
                )
                resp = None

            result = classify(resp, quantity, self._in_progress_codes)

            if result.outcome is PollOutcome.SUCCESS:
                logger.info(
                    "eSIMs ready after %d attempt(s) in %.1fs",
                    attempt, self._clock() - started,
                )
                return list(result.esims)

            if result.outcome is PollOutcome.FATAL:
                message = result.message or "unknown error"
                if result.provider_code:
                    message = f"provider error {result.provider_code}: {message}"
                raise ProvisioningError(
                    ProvisioningErrorKind.QUERY_REJECTED,
                    message,
                    provider_code=result.provider_code,
                    context={"attempt": attempt},
                )

            logger.debug(
                "eSIM poll %d/%d: %s", attempt, self._max_attempts, result.outcome.value,
            )

        elapsed = self._clock() - started
        raise ProvisioningError(
            ProvisioningErrorKind.TIMEOUT,
            f"eSIMs not ready after {self._max_attempts} attempts ({elapsed:.1f}s)",
            context={"attempts": self._max_attempts, "elapsed_s": round(elapsed, 1)},
        )


# ---------------------------------------------------------------------------
# Module-level singleton + FastAPI dependency
# ---------------------------------------------------------------------------
_client: Optional[EsimAccessClient] = None


def get_provisioning_client() -> EsimAccessClient:
    global _client
    if _client is None:
        _client = EsimAccessClient()
    return _client
