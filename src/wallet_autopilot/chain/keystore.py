"""The agent's signing key.

Wallets delegate to the agent's address; the agent signs its relay
requests with the matching key. The key lives either in an encrypted
``eth_account`` keystore under the root directory or, for hosted setups,
in ``${AGENT_PRIVATE_KEY}``.
"""

from __future__ import annotations

import json
from pathlib import Path

from eth_account import Account
from web3 import Web3

KEYSTORE_NAME = "agent-keystore.json"


def _keystore(key_dir: Path) -> dict | None:
    path = key_dir / KEYSTORE_NAME
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def create_agent_key(key_dir: Path, password: str) -> str:
    """Generate the agent keypair and write it as an encrypted keystore.

    Returns the checksummed agent address, i.e. the delegate wallets grant
    authority to. Raises ``FileExistsError`` rather than overwriting an
    existing key, since delegations already point at its address.
    """
    path = key_dir / KEYSTORE_NAME
    if path.exists():
        raise FileExistsError(
            f"Agent key already exists at {path}. "
            "Existing delegations name its address; move it away first to rotate."
        )
    if not password:
        raise ValueError("A keystore password is required.")

    acct = Account.create()
    key_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(Account.encrypt(acct.key, password), indent=2), encoding="utf-8")
    return acct.address


def load_address(key_dir: Path) -> str | None:
    """Agent address from the keystore, without decrypting; ``None`` if absent."""
    data = _keystore(key_dir)
    if data is None:
        return None
    raw = data.get("address", "")
    return Web3.to_checksum_address(raw if raw.startswith("0x") else "0x" + raw)


def decrypt_key(key_dir: Path, password: str) -> bytes:
    data = _keystore(key_dir)
    if data is None:
        raise FileNotFoundError(f"No keystore found at {key_dir / KEYSTORE_NAME}")
    try:
        return bytes(Account.decrypt(data, password))
    except ValueError as exc:
        raise ValueError(f"Failed to decrypt agent keystore: {exc}") from exc


def resolve_signing_key(key_dir: Path, private_key: str = "", password: str = "") -> bytes | None:
    """Pick the signing key: raw ``private_key`` first, then the keystore.

    Returns ``None`` when neither is usable; relay requests then go
    unsigned.
    """
    if private_key:
        return bytes(Account.from_key(private_key).key)
    if password and _keystore(key_dir) is not None:
        return decrypt_key(key_dir, password)
    return None


def address_of(key: bytes) -> str:
    return Account.from_key(key).address
