"""Authority provider - submits transactions under a wallet's delegation.

The delegation/redemption mechanism itself is a black box: the agent hands
an encoded transaction intent and the delegation's proof of grant to a
relay, and gets back a transaction reference or a structured rejection.
Fee quotes and receipts are read directly from the chain with ``web3``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from wallet_autopilot.chain.chains import Chain
from wallet_autopilot.config import AuthorityConfig
from wallet_autopilot.errors import (
    AuthorityRejected,
    FeeCeilingExceeded,
    PermanentExternalError,
    TransientExternalError,
)
from wallet_autopilot.storage.models import ActionKind, DelegationRecord

logger = logging.getLogger("wallet_autopilot.authority")

ERC20_APPROVE_ABI = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

_REJECTION_REASONS = {
    AuthorityRejected.INSUFFICIENT_SCOPE,
    AuthorityRejected.INSUFFICIENT_FUNDS,
    AuthorityRejected.REJECTED_ON_CHAIN,
}


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass(frozen=True)
class TransactionIntent:
    """What the agent wants executed on the delegator's behalf."""

    idempotency_key: str
    kind: ActionKind
    to: str           # token contract
    data: str         # calldata
    value: int = 0
    max_fee_per_gas_wei: int = 0  # ceiling; 0 means "no ceiling configured"

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return payload


def encode_revoke(token: str, spender: str) -> str:
    """Calldata for ``approve(spender, 0)`` on *token*."""
    contract = Web3().eth.contract(abi=ERC20_APPROVE_ABI)
    return contract.encode_abi("approve", args=[Web3.to_checksum_address(spender), 0])


def build_intent(
    idempotency_key: str,
    kind: ActionKind,
    token: str,
    spender: str,
    max_fee_per_gas_wei: int,
) -> TransactionIntent:
    if kind != ActionKind.REVOKE:
        raise PermanentExternalError(
            f"No transaction encoding for action kind '{kind.value}'",
            details={"kind": kind.value},
        )
    return TransactionIntent(
        idempotency_key=idempotency_key,
        kind=kind,
        to=Web3.to_checksum_address(token),
        data=encode_revoke(token, spender),
        max_fee_per_gas_wei=max_fee_per_gas_wei,
    )


class BaseAuthorityProvider(ABC):
    """Interface the executor submits through."""

    @abstractmethod
    async def submit(self, delegation: DelegationRecord, intent: TransactionIntent) -> str:
        """Submit *intent* under *delegation* and return a transaction reference.

        Raises ``AuthorityRejected`` / ``FeeCeilingExceeded`` for terminal
        failures and ``TransientExternalError`` for retryable ones.
        """

    @abstractmethod
    async def transaction_status(self, tx_ref: str) -> TxStatus:
        """Current on-chain status of a previously submitted transaction."""

    async def close(self) -> None:
        return None


class RelayAuthorityProvider(BaseAuthorityProvider):
    """Submits delegated transactions through an HTTP delegation relay.

    Requests are signed with the agent key so the relay can check that the
    caller is the delegate named in the grant.
    """

    def __init__(
        self,
        config: AuthorityConfig,
        chain: Chain,
        signing_key: bytes | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        w3: Web3 | None = None,
    ) -> None:
        self.config = config
        self.chain = chain
        self._signing_key = signing_key
        self._client = httpx.AsyncClient(
            base_url=config.relay_url,
            timeout=config.timeout_seconds,
            transport=transport,
        )
        self._w3 = w3

    @property
    def w3(self) -> Web3:
        """Lazily created Web3 connection for fee quotes and receipts."""
        if self._w3 is None:
            w3 = Web3(
                Web3.HTTPProvider(
                    self.chain.rpc_url,
                    request_kwargs={"timeout": self.config.timeout_seconds},
                )
            )
            if self.chain.poa:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._w3 = w3
        return self._w3

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Fees
    # ------------------------------------------------------------------

    def _quote_fees_sync(self) -> tuple[int, int]:
        """Return ``(max_fee_per_gas, max_priority_fee_per_gas)`` in wei.

        Uses EIP-1559 fee parameters with a legacy gas price fallback.
        """
        latest = self.w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is not None:
            max_priority = Web3.to_wei(1.5, "gwei")
            return base_fee * 2 + max_priority, max_priority
        gas_price = self.w3.eth.gas_price
        return gas_price, 0

    async def quote_fees(self) -> tuple[int, int]:
        try:
            return await asyncio.to_thread(self._quote_fees_sync)
        except Exception as exc:
            raise TransientExternalError(f"Fee quote failed on {self.chain.name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _sign(self, body: str) -> str | None:
        if self._signing_key is None:
            return None
        signed = Account.sign_message(encode_defunct(text=body), private_key=self._signing_key)
        return "0x" + signed.signature.hex().removeprefix("0x")

    async def submit(self, delegation: DelegationRecord, intent: TransactionIntent) -> str:
        max_fee, max_priority = await self.quote_fees()
        if intent.max_fee_per_gas_wei and max_fee > intent.max_fee_per_gas_wei:
            raise FeeCeilingExceeded(
                f"Quoted max fee {Web3.from_wei(max_fee, 'gwei')} gwei exceeds ceiling "
                f"{Web3.from_wei(intent.max_fee_per_gas_wei, 'gwei')} gwei",
                details={"quoted_wei": max_fee, "ceiling_wei": intent.max_fee_per_gas_wei},
            )

        payload = {
            "delegationId": delegation.id,
            "delegator": delegation.delegator,
            "delegate": delegation.delegate,
            "proofOfGrant": delegation.proof_of_grant,
            "chainId": self.chain.chain_id,
            "maxFeePerGas": str(max_fee),
            "maxPriorityFeePerGas": str(max_priority),
            **intent.to_payload(),
        }
        body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        headers = {"Content-Type": "application/json", "Idempotency-Key": intent.idempotency_key}
        signature = self._sign(body)
        if signature:
            headers["X-Agent-Signature"] = signature

        try:
            resp = await self._client.post("/v1/redeem", content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientExternalError(
                f"Relay timed out after {self.config.timeout_seconds}s"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientExternalError(f"Relay unreachable: {exc}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientExternalError(
                f"Relay returned HTTP {resp.status_code}", details={"status": resp.status_code}
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}

        # 409: the relay already accepted this idempotency key.
        if resp.status_code in (200, 201, 202, 409) and data.get("txRef"):
            logger.info(
                f"Relay accepted {intent.kind.value} on {intent.to} for delegation "
                f"{delegation.id}: {self.chain.tx_url(data['txRef'])}"
            )
            return data["txRef"]

        error = data.get("error") or {}
        reason = error.get("code", "")
        if reason in _REJECTION_REASONS:
            raise AuthorityRejected(reason, error.get("message", ""), details={"status": resp.status_code})
        raise PermanentExternalError(
            f"Relay returned HTTP {resp.status_code} without a transaction reference",
            details={"status": resp.status_code, "error": error},
        )

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def _status_sync(self, tx_ref: str) -> TxStatus:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_ref)
        except TransactionNotFound:
            return TxStatus.PENDING
        return TxStatus.CONFIRMED if receipt["status"] == 1 else TxStatus.REVERTED

    async def transaction_status(self, tx_ref: str) -> TxStatus:
        try:
            return await asyncio.to_thread(self._status_sync, tx_ref)
        except Exception as exc:
            raise TransientExternalError(f"Receipt lookup failed for {tx_ref}: {exc}") from exc
