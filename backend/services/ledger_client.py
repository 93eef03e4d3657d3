"""
LedgerClient - Talks to the on-chain relayer

The ledger is a black box that accepts an epoch's Merkle root and later
disburses funds against proofs. The engine never signs transactions itself;
it calls a relayer over HTTP.

Endpoints (JSON):
    POST /epochs/{epoch_id}/root        SubmitRootRequest      -> LedgerReceipt
    POST /epochs/{epoch_id}/distribute  BatchDistributeRequest -> LedgerReceipt

Failure classes:
- 409 with the same root: the root is already on chain, treated as success
- 409 with a different root, other 4xx: LedgerRejectedError (permanent)
- 5xx, network errors, timeouts: LedgerUnavailableError (transient)

Both calls are idempotent from the engine's point of view.
"""
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List, Sequence

import httpx

from models.api.ledger import (
    SubmitRootRequest,
    DistributionEntry,
    BatchDistributeRequest,
    LedgerReceipt,
    LedgerErrorBody,
)
from models.domain.epoch import EpochPayout
from services.errors import LedgerUnavailableError, LedgerRejectedError
from utils.money import format_amount, to_units

logger = logging.getLogger(__name__)


def _wire_options(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Decimals go over the wire as strings"""
    if not options:
        return {}
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in options.items()}


def distribution_entries(payouts: Sequence[EpochPayout]) -> List[DistributionEntry]:
    return [
        DistributionEntry(
            index=p.index,
            host_address=p.host_address,
            amount=format_amount(p.amount),
            amount_units=str(to_units(p.amount)),
            proof=list(p.proof),
        )
        for p in payouts
    ]


class LedgerClient:
    """
    Interface of the ledger collaborator.

    Implementations raise LedgerUnavailableError or LedgerRejectedError;
    anything else is a bug.
    """

    async def submit_root(
        self,
        epoch_id: str,
        merkle_root: str,
        total_amount: Decimal,
        options: Optional[Dict[str, Any]] = None
    ) -> LedgerReceipt:
        raise NotImplementedError(f"{self.__class__.__name__} must implement submit_root()")

    async def batch_distribute(
        self,
        epoch_id: str,
        merkle_root: str,
        payouts: Sequence[EpochPayout],
        options: Optional[Dict[str, Any]] = None
    ) -> LedgerReceipt:
        raise NotImplementedError(f"{self.__class__.__name__} must implement batch_distribute()")

    async def close(self):
        pass


class HttpLedgerClient(LedgerClient):
    """Relayer client over httpx"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {'Content-Type': 'application/json'}
        if api_key:
            headers['Authorization'] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> 'HttpLedgerClient':
        return cls(
            base_url=settings.ledger_url,
            api_key=settings.ledger_api_key,
            timeout=settings.ledger_timeout_seconds,
        )

    async def close(self):
        await self.client.aclose()

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        try:
            return await self.client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise LedgerUnavailableError(f"Ledger timeout on {path}: {e}") from e
        except httpx.RequestError as e:
            raise LedgerUnavailableError(f"Ledger unreachable on {path}: {e}") from e

    @staticmethod
    def _error_body(response: httpx.Response) -> LedgerErrorBody:
        try:
            return LedgerErrorBody.model_validate(response.json())
        except ValueError:
            return LedgerErrorBody(error=response.text or f"HTTP {response.status_code}")

    def _raise_for_status(self, response: httpx.Response, path: str):
        if response.status_code >= 500:
            raise LedgerUnavailableError(
                f"Ledger {response.status_code} on {path}: {self._error_body(response).error}"
            )
        if response.status_code >= 400:
            raise LedgerRejectedError(
                f"Ledger rejected {path} ({response.status_code}): {self._error_body(response).error}"
            )

    async def submit_root(
        self,
        epoch_id: str,
        merkle_root: str,
        total_amount: Decimal,
        options: Optional[Dict[str, Any]] = None
    ) -> LedgerReceipt:
        path = f"/epochs/{epoch_id}/root"
        request = SubmitRootRequest(
            epoch_id=epoch_id,
            merkle_root=merkle_root,
            total_amount=format_amount(total_amount),
            total_amount_units=str(to_units(total_amount)),
            options=_wire_options(options),
        )
        response = await self._post(path, request.model_dump())

        if response.status_code == 409:
            body = self._error_body(response)
            if body.merkle_root and body.merkle_root.lower() == merkle_root.lower():
                logger.info(f"[ledger] Root for {epoch_id} already on chain")
                return LedgerReceipt(
                    tx_hash=response.json().get('tx_hash', ''),
                    status='already_submitted',
                    merkle_root=body.merkle_root,
                )
            raise LedgerRejectedError(
                f"Ledger holds a different root for {epoch_id}: {body.merkle_root}"
            )

        self._raise_for_status(response, path)
        receipt = LedgerReceipt.model_validate(response.json())
        logger.info(f"[ledger] Submitted root for {epoch_id}: tx={receipt.tx_hash}")
        return receipt

    async def batch_distribute(
        self,
        epoch_id: str,
        merkle_root: str,
        payouts: Sequence[EpochPayout],
        options: Optional[Dict[str, Any]] = None
    ) -> LedgerReceipt:
        path = f"/epochs/{epoch_id}/distribute"
        request = BatchDistributeRequest(
            epoch_id=epoch_id,
            merkle_root=merkle_root,
            entries=distribution_entries(payouts),
            options=_wire_options(options),
        )
        response = await self._post(path, request.model_dump())
        self._raise_for_status(response, path)

        receipt = LedgerReceipt.model_validate(response.json())
        logger.info(
            f"[ledger] Distributed {len(payouts)} payouts for {epoch_id}: tx={receipt.tx_hash}"
        )
        return receipt
