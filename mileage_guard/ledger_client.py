"""Clients that anchor trip summaries on the external ledger.

The ledger is an external collaborator; all it must offer is an
idempotent "anchor this payload" call returning a transaction hash.
Retry policy lives in :mod:`~mileage_guard.submission_manager`; a client
makes exactly one attempt and classifies the failure:

* ``SubmissionTransportError`` -- network error, timeout or 5xx.  Retryable.
* ``SubmissionRejectedError``  -- 4xx.  The payload itself was refused.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from mileage_guard.config import PipelineSettings
from mileage_guard.errors import SubmissionRejectedError, SubmissionTransportError
from mileage_guard.schemas import SubmissionPayload

logger = structlog.get_logger(__name__)

_ENDPOINT_PATH = "/v1/anchors"
_HASH_KEYS = ("transaction_hash", "transactionHash", "txHash", "tx_hash")


class LedgerClient(ABC):
    """Unified interface for anchoring a batch summary."""

    async def start(self) -> None:
        """Open any underlying connections."""

    async def close(self) -> None:
        """Release any underlying connections."""

    @abstractmethod
    async def anchor(self, payload: SubmissionPayload) -> str:
        """Anchor *payload* and return its transaction hash."""


class HttpLedgerClient(LedgerClient):
    """POSTs payloads to ``{ledger_base_url}/v1/anchors``.

    The payload digest is sent as ``Idempotency-Key`` so a retry after an
    ambiguous failure cannot anchor the same trip twice.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = settings.ledger_base_url.rstrip("/")
        self._api_key = settings.ledger_api_key
        self._timeout = settings.submission_timeout_seconds
        self._client = client
        self._owns_client = client is None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # -- public API ---------------------------------------------------------

    async def anchor(self, payload: SubmissionPayload) -> str:
        if self._client is None:
            raise RuntimeError("HttpLedgerClient.start() must be called before anchoring")

        url = f"{self._base_url}{_ENDPOINT_PATH}"
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": payload.digest(),
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = await self._client.post(
                url, content=payload.canonical_json(), headers=headers
            )
        except httpx.TimeoutException as exc:
            raise SubmissionTransportError(f"Ledger timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise SubmissionTransportError(f"Ledger unreachable: {exc}") from exc

        status_code = response.status_code
        if status_code >= 500:
            logger.warning(
                "ledger_server_error",
                batch_id=payload.batch_id,
                status=status_code,
            )
            raise SubmissionTransportError(
                f"Ledger returned {status_code}", status_code=status_code
            )

        if status_code == 409:
            # Idempotency replay: the payload is already anchored.
            tx_hash = _extract_hash(response)
            if tx_hash:
                logger.info("ledger_already_anchored", batch_id=payload.batch_id)
                return tx_hash

        if 400 <= status_code < 500:
            logger.error(
                "ledger_rejected",
                batch_id=payload.batch_id,
                status=status_code,
                body=response.text[:500],
            )
            raise SubmissionRejectedError(
                f"Ledger rejected payload ({status_code}): {response.text[:200]}",
                status_code=status_code,
            )

        tx_hash = _extract_hash(response)
        if not tx_hash:
            raise SubmissionTransportError(
                "Ledger response carried no transaction hash", status_code=status_code
            )
        logger.info(
            "ledger_anchored",
            batch_id=payload.batch_id,
            status=status_code,
            transaction_hash=tx_hash,
        )
        return tx_hash


class DryRunLedgerClient(LedgerClient):
    """Validates and logs payloads; never calls the ledger.

    Returns a deterministic pseudo hash derived from the payload digest.
    """

    async def anchor(self, payload: SubmissionPayload) -> str:
        digest = payload.digest()
        logger.info(
            "dry_run_anchor",
            batch_id=payload.batch_id,
            mileage_delta=payload.mileage_delta,
            payload_bytes=len(payload.canonical_json()),
        )
        return f"0x{digest}"


def create_ledger_client(settings: PipelineSettings) -> LedgerClient:
    """Factory: return the right client for the current config."""
    if settings.ledger_dry_run:
        return DryRunLedgerClient()
    return HttpLedgerClient(settings)


def _extract_hash(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    for key in _HASH_KEYS:
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None
