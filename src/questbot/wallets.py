import logging
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from questbot.chain import derive_address
from questbot.config import ChainConfig
from questbot.errors import WalletError
from questbot.logging_config import wallet_tag

log = logging.getLogger("questbot.wallets")

KEYS_TEMPLATE = "# Add your private keys here (one per line)\n"


def read_private_keys(path: str | Path = "pk.txt") -> list[str]:
    """One hex key per line; blank lines and ``#`` comments are skipped. Creates a template if missing."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(KEYS_TEMPLATE, encoding="utf-8")
        log.warning("%s not found, created an empty template", path)
        return []
    except OSError as e:
        raise WalletError(f"Could not read private keys file ({path}): {e}") from e
    return [line.strip() for line in text.splitlines() if line.strip() and not line.strip().startswith("#")]


class Keyring:
    """Wallet index -> private key. Indexes are 0-based, positions in the keys file."""

    def __init__(self, keys: Sequence[str]) -> None:
        self._keys = list(keys)

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def indexes(self) -> list[int]:
        return list(range(len(self._keys)))

    def key_for(self, wallet_index: int) -> str:
        if not 0 <= wallet_index < len(self._keys):
            raise WalletError(f"No private key for wallet {wallet_index + 1} ({len(self._keys)} loaded)")
        return self._keys[wallet_index]


async def setup_wallets(
    keys: Sequence[str],
    store,
    chains: Mapping[str, ChainConfig],
    derive: Callable[[str, str], str] = derive_address,
) -> Keyring:
    """Derive and store every missing per-chain address. A failed derivation leaves that address null."""
    log.info("Found %d private keys", len(keys))
    for wallet_index, key in enumerate(keys):
        tag = wallet_tag(wallet_index)
        record = await store.read_progress_data(wallet_index)
        for chain, cfg in chains.items():
            if record.addresses.get(chain):
                continue
            log.info("%s deriving %s address", tag, chain)
            try:
                address = derive(key, cfg.prefix)
            except Exception as e:
                log.error("%s failed to derive %s address: %s", tag, chain, e)
                continue
            await store.update_address(wallet_index, chain, address)
            log.info("%s %s address: %s", tag, chain, address)
    return Keyring(keys)
