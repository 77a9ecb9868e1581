"""Autopilot - wires the agent's components together from configuration."""

from __future__ import annotations

import logging
from pathlib import Path

from wallet_autopilot.agent.executor import ExecutionStore, TransactionExecutor
from wallet_autopilot.agent.monitor import CycleReport, WalletMonitor
from wallet_autopilot.agent.registry import DelegationRegistry, normalize_address
from wallet_autopilot.agent.rules import ApprovalObservation, RuleEngine
from wallet_autopilot.chain.authority import BaseAuthorityProvider, RelayAuthorityProvider
from wallet_autopilot.chain.chains import get_chain
from wallet_autopilot.chain.indexer import IndexerClient
from wallet_autopilot.chain.keystore import address_of, load_address, resolve_signing_key
from wallet_autopilot.config import (
    AutopilotConfig,
    get_root_dir,
    is_unresolved,
    load_config,
)
from wallet_autopilot.errors import ValidationError
from wallet_autopilot.storage.database import Database, get_database
from wallet_autopilot.storage.models import (
    DelegationRecord,
    DelegationRequest,
    ExecutionRecord,
    WalletHealth,
)

logger = logging.getLogger("wallet_autopilot.autopilot")


class Autopilot:
    """The agent, as one object the API and CLI talk to.

    Owns the database connection and the external clients; every component
    is constructed here and injected, so tests can pass fakes for the
    indexer and the authority provider.
    """

    def __init__(
        self,
        config: AutopilotConfig,
        root_dir: Path,
        db: Database,
        indexer: IndexerClient | None = None,
        authority: BaseAuthorityProvider | None = None,
        signing_key: bytes | None = None,
    ):
        self.config = config
        self.root_dir = root_dir
        self.db = db
        self.chain = get_chain(config.chain.name, config.chain.rpc_url)

        self.registry = DelegationRegistry(db)
        self.store = ExecutionStore(db)
        self.indexer = indexer or IndexerClient(config.indexer)
        self.authority = authority or RelayAuthorityProvider(
            config.authority, self.chain, signing_key=signing_key
        )
        self.rules = RuleEngine(config.rules)
        self.executor = TransactionExecutor(
            config.executor,
            self.registry,
            self.store,
            self.authority,
            confirmation_window=config.indexer.max_staleness_seconds,
        )

        self.agent_address = self._resolve_agent_address(signing_key)
        self.monitor: WalletMonitor | None = None
        if self.agent_address:
            self.monitor = WalletMonitor(
                config.monitor,
                self.registry,
                self.indexer,
                self.rules,
                self.executor,
                self.agent_address,
            )

    def _resolve_agent_address(self, signing_key: bytes | None) -> str | None:
        if self.config.agent.address and not is_unresolved(self.config.agent.address):
            return normalize_address(self.config.agent.address, "agent.address")
        if signing_key is not None:
            return address_of(signing_key).lower()
        address = load_address(self.root_dir)
        return address.lower() if address else None

    @classmethod
    async def load(
        cls,
        base_path: Path | None = None,
        indexer: IndexerClient | None = None,
        authority: BaseAuthorityProvider | None = None,
    ) -> Autopilot:
        """Load the agent from a ``.wallet-autopilot`` directory."""
        root_dir = get_root_dir(base_path, create=False)
        config_path = root_dir / "config.yaml"
        if not config_path.exists():
            raise FileNotFoundError(
                f"No configuration found at {config_path}. Run 'wallet-autopilot init' first."
            )

        config = load_config(config_path)
        signing_key = None
        if authority is None:
            auth = config.authority
            signing_key = resolve_signing_key(
                root_dir,
                private_key="" if is_unresolved(auth.private_key) else auth.private_key,
                password="" if is_unresolved(auth.key_password) else auth.key_password,
            )
            if signing_key is None:
                logger.warning("No agent signing key available; relay requests will be unsigned")

        db = get_database(root_dir)
        await db.connect()
        autopilot = cls(config, root_dir, db, indexer=indexer, authority=authority, signing_key=signing_key)
        if autopilot.agent_address is None:
            logger.warning(
                "No agent address configured and no keystore found; the monitor is disabled. "
                "Run 'wallet-autopilot key create' or set agent.address."
            )
        return autopilot

    # ------------------------------------------------------------------
    # Monitor
    # ------------------------------------------------------------------

    def _require_monitor(self) -> WalletMonitor:
        if self.monitor is None:
            raise ValidationError("No agent address configured; cannot run the monitor.")
        return self.monitor

    def start_monitor(self) -> None:
        self._require_monitor().start()

    async def run_once(self) -> CycleReport | None:
        """Run a single monitor cycle in the foreground."""
        return await self._require_monitor().run_cycle()

    # ------------------------------------------------------------------
    # Wallet reads
    # ------------------------------------------------------------------

    async def wallet_health(self, address: str) -> WalletHealth:
        address = normalize_address(address, "address")
        return await self.indexer.get_wallet_health(address, self.config.rules.unlimited_threshold)

    async def approvals(self, address: str, risky_only: bool = False) -> list[ApprovalObservation]:
        address = normalize_address(address, "address")
        return await self.indexer.get_approvals(address, risky_only=risky_only)

    # ------------------------------------------------------------------
    # Delegations
    # ------------------------------------------------------------------

    async def register_delegation(self, request: DelegationRequest) -> DelegationRecord:
        return await self.registry.register(request)

    async def revoke_delegation(self, delegation_id: str) -> DelegationRecord:
        return await self.registry.revoke(delegation_id)

    async def pause_delegation(self, delegation_id: str) -> DelegationRecord:
        return await self.registry.pause(delegation_id)

    async def resume_delegation(self, delegation_id: str) -> DelegationRecord:
        return await self.registry.resume(delegation_id)

    async def delegations_for(self, wallet: str) -> list[DelegationRecord]:
        return await self.registry.list_for_wallet(normalize_address(wallet, "address"))

    async def list_actions(
        self,
        delegation_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionRecord]:
        return await self.store.list_records(delegation_id=delegation_id, status=status, limit=limit)

    def status(self) -> dict:
        return {
            "name": self.config.name,
            "agent": self.agent_address,
            "chain": self.chain.name,
            "monitor": self.monitor.status() if self.monitor else None,
        }

    async def shutdown(self) -> None:
        """Stop the monitor, close clients, then the database."""
        if self.monitor is not None:
            await self.monitor.stop()
        await self.indexer.close()
        await self.authority.close()
        await self.db.close()
