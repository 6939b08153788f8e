"""Wallets and the per-chain keyring."""

from __future__ import annotations

import asyncio
import secrets
import string
from dataclasses import dataclass, field

from pydantic import Field

from interchain_harness.types import StrictBaseModel

FAUCET_KEY = "faucet"
"""Key name of the pre-funded account present in every chain."""


class Wallet(StrictBaseModel):
    """A key known to a chain's keyring."""

    key_name: str
    mnemonic: str = Field(repr=False)
    formatted_address: str
    """Address in the family's display encoding (bech32, 0x hex, base58/bech32)."""

    address_bytes: bytes
    """Raw address bytes for the family's codec."""


class WalletAmount(StrictBaseModel):
    """An amount of one denomination at one address."""

    address: str
    denom: str = ""
    amount: int = Field(ge=0)


def random_suffix(length: int = 6) -> str:
    """Lowercase random string for unique key names."""
    alphabet = string.ascii_lowercase
    return "".join(secrets.choice(alphabet) for _ in range(length))


@dataclass(slots=True)
class Keyring:
    """
    The driver-side view of a chain's keys.

    The node or wallet inside the container holds the real key material. This
    records what was created so tests can export and re-import accounts.
    Additions are serialized by `lock`.
    """

    wallets: dict[str, Wallet] = field(default_factory=dict)
    """Known wallets by key name."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    """Held while a key is being created in the container."""

    def __contains__(self, key_name: str) -> bool:
        return key_name in self.wallets

    def __len__(self) -> int:
        return len(self.wallets)

    def get(self, key_name: str) -> Wallet:
        """
        Look up a wallet.

        Raises:
            KeyError: If the key was never created or imported.
        """
        try:
            return self.wallets[key_name]
        except KeyError:
            raise KeyError(f"Unknown key '{key_name}'") from None

    def add(self, wallet: Wallet) -> None:
        self.wallets[wallet.key_name] = wallet

    def unique_name(self, prefix: str) -> str:
        """Pick a key name with `prefix` that is not yet taken."""
        while True:
            candidate = f"{prefix}-{random_suffix()}"
            if candidate not in self.wallets:
                return candidate

    def export(self) -> dict[str, str]:
        """Mnemonics keyed by key name."""
        return {name: wallet.mnemonic for name, wallet in self.wallets.items()}
