"""Wallet Autopilot - automated approval hygiene under delegated authority.

Wallets grant the agent a scoped, revocable delegation. On a fixed
interval the agent reads each wallet's token approvals from the indexer,
runs them through the rule engine and submits revocations through the
authority provider, keeping a durable execution record for every action.
"""

__version__ = "0.2.0"
