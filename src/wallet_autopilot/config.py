"""Configuration system for Wallet Autopilot.

Loads agent config from `.wallet-autopilot/config.yaml`, supports environment
variable expansion, and provides the directory helpers used by the CLI and
the HTTP service.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


def is_unresolved(value: str | None) -> bool:
    """True for empty values and placeholders whose variable was not set."""
    return not value or bool(_ENV_VAR_RE.fullmatch(value))


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------

MAX_UINT256 = 2**256 - 1


class AgentConfig(BaseModel):
    """Identity of the agent that delegations are granted to.

    When ``address`` is empty the address of the local keystore is used.
    """

    address: str = ""


class MonitorConfig(BaseModel):
    """Periodic scheduler settings."""

    enabled: bool = True
    interval_seconds: float = 300.0     # five minutes
    max_concurrency: int = 4            # concurrent per-delegation workers
    run_on_start: bool = True
    shutdown_grace_seconds: float = 30.0


class RulesConfig(BaseModel):
    """Rule engine thresholds.

    ``unlimited_threshold`` is a near-max value rather than an exact match
    on ``2**256 - 1`` so that tokens encoding "infinite" slightly
    differently are still caught.
    """

    unlimited_threshold: int = 2**255
    staleness_days: int = 30
    usage_window_days: int = 30
    risky_spenders: list[str] = Field(default_factory=list)
    enabled: list[str] = Field(
        default_factory=lambda: ["unlimited", "risky", "stale"]
    )


class ExecutorConfig(BaseModel):
    """Submission, retry and fee limits."""

    max_attempts: int = 5
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 3600.0
    submit_timeout_seconds: float = 30.0
    max_fee_per_gas_gwei: float = 200.0  # hard ceiling, never clamped


class IndexerConfig(BaseModel):
    """Envio/Hasura GraphQL indexer."""

    url: str = "http://localhost:8080/v1/graphql"
    timeout_seconds: float = 15.0
    max_staleness_seconds: float = 600.0  # how far behind the chain the index may lag


class AuthorityConfig(BaseModel):
    """Delegation relay that redeems the agent's delegated authority."""

    relay_url: str = "http://localhost:8787"
    timeout_seconds: float = 30.0
    private_key: str = ""    # ${AGENT_PRIVATE_KEY}, takes precedence over the keystore
    key_password: str = ""   # ${WALLET_AUTOPILOT_KEY_PASSWORD}


class ChainConfig(BaseModel):
    """Network the agent operates on."""

    name: str = "monad-testnet"
    rpc_url: Optional[str] = None  # Overrides the chain's default RPC


class ApiConfig(BaseModel):
    """HTTP API settings."""

    host: str = "127.0.0.1"
    port: int = 3001


class AutopilotConfig(BaseModel):
    """Root configuration object."""

    name: str = "Wallet Autopilot"
    agent: AgentConfig = Field(default_factory=AgentConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    authority: AuthorityConfig = Field(default_factory=AuthorityConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_root_dir(base: Path | None = None, *, create: bool = True) -> Path:
    """Return the ``.wallet-autopilot/`` directory.

    Parameters
    ----------
    base:
        Parent directory that contains (or will contain) the root folder.
        Defaults to the current working directory.
    create:
        If *True* (default), create the directory if it doesn't exist.
    """
    if base is None:
        base = Path.cwd()
    root = base / ".wallet-autopilot"
    if create:
        root.mkdir(parents=True, exist_ok=True)
    return root


def load_config(path: Path) -> AutopilotConfig:
    """Load and validate the configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation.
    """
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return AutopilotConfig.model_validate(expanded)


def save_config(config: AutopilotConfig, path: Path) -> None:
    """Serialize an :class:`AutopilotConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)


def init_config(base: Path | None = None, **overrides) -> Path:
    """Write a default config file (unless one exists) and return its path."""
    config_path = get_root_dir(base) / "config.yaml"
    if not config_path.exists():
        config = AutopilotConfig.model_validate(overrides)
        # Secrets come from the environment, never the file.
        config.authority.private_key = config.authority.private_key or "${AGENT_PRIVATE_KEY}"
        config.authority.key_password = (
            config.authority.key_password or "${WALLET_AUTOPILOT_KEY_PASSWORD}"
        )
        save_config(config, config_path)
    return config_path
