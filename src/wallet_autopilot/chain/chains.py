"""Networks the agent can operate on."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class Chain:
    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str
    poa: bool = False  # block headers carry POA extraData; needs web3's POA middleware

    def tx_url(self, tx_ref: str) -> str:
        return f"{self.explorer_url}/tx/{tx_ref}"


_KNOWN = (
    Chain("monad-testnet", 41454, "https://testnet.monad.xyz", "MON",
          "https://explorer.testnet.monad.xyz", poa=True),
    Chain("ethereum", 1, "https://eth.llamarpc.com", "ETH", "https://etherscan.io"),
    Chain("base", 8453, "https://mainnet.base.org", "ETH", "https://basescan.org", poa=True),
)

CHAINS: dict[str, Chain] = {c.name: c for c in _KNOWN}


def get_chain(name: str, rpc_url: str | None = None) -> Chain:
    """Look up *name*, applying an RPC override; ``KeyError`` if unknown."""
    try:
        chain = CHAINS[name]
    except KeyError:
        raise KeyError(f"Unknown chain '{name}'. Available: {list_chain_names()}") from None
    return replace(chain, rpc_url=rpc_url) if rpc_url else chain


def list_chain_names() -> list[str]:
    return list(CHAINS)
