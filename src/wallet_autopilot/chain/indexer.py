"""GraphQL client for the approval indexer (Envio / Hasura schema).

The indexer is a read-only collaborator and may lag the chain. Callers get
either a complete approval set or an exception: a timeout is raised as a
retryable ``TransientExternalError`` and is never turned into an empty
result, because an empty result means "nothing to do".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from wallet_autopilot.agent.rules import ApprovalObservation, ApprovalStatus
from wallet_autopilot.config import MAX_UINT256, IndexerConfig
from wallet_autopilot.errors import PermanentExternalError, TransientExternalError
from wallet_autopilot.storage.models import WalletHealth

logger = logging.getLogger("wallet_autopilot.indexer")

_APPROVAL_FIELDS = """
        id
        owner
        spender
        token
        amount
        timestamp
        isRisky
        status
"""

ALL_APPROVALS_QUERY = f"""
    query GetAllApprovals($owner: String!) {{
      TokenApproval(
        where: {{
          owner: {{ _eq: $owner }}
          status: {{ _eq: "ACTIVE" }}
        }}
        order_by: {{ timestamp: asc }}
      ) {{{_APPROVAL_FIELDS}      }}
    }}
"""

RISKY_APPROVALS_QUERY = f"""
    query GetRiskyApprovals($owner: String!) {{
      TokenApproval(
        where: {{
          owner: {{ _eq: $owner }}
          isRisky: {{ _eq: true }}
          status: {{ _eq: "ACTIVE" }}
        }}
        order_by: {{ timestamp: asc }}
      ) {{{_APPROVAL_FIELDS}      }}
    }}
"""

WALLET_HEALTH_QUERY = """
    query GetWalletHealth($address: String!) {
      WalletHealth(where: { walletAddress: { _eq: $address } }) {
        walletAddress
        healthScore
        riskyApprovals
        spamTokens
        dustTokenCount
        lastUpdated
      }
    }
"""


def _parse_epoch(value: Any) -> Optional[datetime]:
    """Indexer timestamps are BigInt strings, seconds or milliseconds."""
    if value in (None, ""):
        return None
    seconds = int(value)
    if seconds > 10**12:
        seconds //= 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_approval(row: dict, observed_at: datetime) -> ApprovalObservation:
    amount = int(row.get("amount") or 0)
    status = ApprovalStatus.REVOKED if str(row.get("status", "")).upper() == "REVOKED" else ApprovalStatus.ACTIVE
    return ApprovalObservation(
        owner=str(row["owner"]).lower(),
        spender=str(row["spender"]).lower(),
        token=str(row["token"]).lower(),
        amount=amount,
        is_unlimited=amount == MAX_UINT256,
        is_risky=bool(row.get("isRisky", False)),
        approved_at=_parse_epoch(row.get("timestamp")),
        last_used_at=_parse_epoch(row.get("lastUsedAt")),
        observed_at=observed_at,
        status=status,
    )


class IndexerClient:
    """Async read-through client for approvals and wallet health.

    Parameters
    ----------
    config:
        The ``indexer`` section of the configuration.
    transport:
        Optional ``httpx`` transport, used by tests to stub the endpoint.
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or IndexerConfig()
        self._client = httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            transport=transport,
            headers={"User-Agent": "wallet-autopilot"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, query: str, variables: dict) -> dict:
        try:
            resp = await self._client.post(
                self.config.url, json={"query": query, "variables": variables}
            )
        except httpx.TimeoutException as exc:
            raise TransientExternalError(
                f"Indexer request timed out after {self.config.timeout_seconds}s",
                details={"url": self.config.url},
            ) from exc
        except httpx.TransportError as exc:
            raise TransientExternalError(
                f"Indexer unreachable: {exc}", details={"url": self.config.url}
            ) from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientExternalError(
                f"Indexer returned HTTP {resp.status_code}",
                details={"status": resp.status_code},
            )
        if resp.status_code >= 400:
            raise PermanentExternalError(
                f"Indexer rejected query with HTTP {resp.status_code}",
                details={"status": resp.status_code},
            )

        payload = resp.json()
        if payload.get("errors"):
            messages = [e.get("message", "unknown error") for e in payload["errors"]]
            raise PermanentExternalError(
                f"Indexer GraphQL error: {'; '.join(messages)}",
                details={"errors": messages},
            )
        return payload.get("data") or {}

    async def get_approvals(self, owner: str, risky_only: bool = False) -> list[ApprovalObservation]:
        """Return the current active approvals of *owner*."""
        query = RISKY_APPROVALS_QUERY if risky_only else ALL_APPROVALS_QUERY
        data = await self._request(query, {"owner": owner.lower()})
        observed_at = datetime.now(timezone.utc)
        rows = data.get("TokenApproval") or []
        approvals = [parse_approval(r, observed_at) for r in rows]
        logger.debug(f"Indexer returned {len(approvals)} approvals for {owner}")
        return approvals

    async def get_wallet_health_row(self, address: str) -> dict | None:
        """Raw ``WalletHealth`` row, or ``None`` if the wallet was never indexed."""
        data = await self._request(WALLET_HEALTH_QUERY, {"address": address.lower()})
        rows = data.get("WalletHealth") or []
        return rows[0] if rows else None

    async def get_wallet_health(self, address: str, unlimited_threshold: int) -> WalletHealth:
        """Aggregate health for *address* from the indexer's current state."""
        row = await self.get_wallet_health_row(address)
        approvals = await self.get_approvals(address)
        if row is None and not approvals:
            return WalletHealth(wallet=address.lower(), indexed=False)
        return summarize_health(address, approvals, row, unlimited_threshold)


def summarize_health(
    address: str,
    approvals: list[ApprovalObservation],
    row: dict | None,
    unlimited_threshold: int,
) -> WalletHealth:
    """Compute the health score: 100 minus 10 per risky approval, floor 0."""
    active = [a for a in approvals if a.is_active]
    unlimited = sum(1 for a in active if a.is_unlimited or a.amount >= unlimited_threshold)
    risky = sum(
        1 for a in active
        if a.is_risky or a.is_unlimited or a.amount >= unlimited_threshold
    )
    row = row or {}
    return WalletHealth(
        wallet=address.lower(),
        indexed=True,
        score=max(0, 100 - risky * 10),
        total_approvals=len(active),
        risky_approvals=risky,
        unlimited_approvals=unlimited,
        spam_tokens=int(row.get("spamTokens") or 0),
        dust_token_count=int(row.get("dustTokenCount") or 0),
        last_updated=_parse_epoch(row.get("lastUpdated")),
    )
