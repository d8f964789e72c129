"""Credential: Opaque handle to signing material read from a file.

The secret is read once at startup and only ever handed to eth_account.
Its repr and str never reveal the contents.
"""

from __future__ import annotations

from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import ConfigError


class Credential:
    """Signing material loaded from a deployment-provided file.

    The file holds either a BIP-39 mnemonic or a hex private key.

    :ivar path: File the credential was read from.
    """

    def __init__(self, path: str | Path, secret: str) -> None:
        self.path = Path(path)
        self._secret = secret

    def __repr__(self) -> str:
        return f"Credential(path={str(self.path)!r})"

    __str__ = __repr__

    @classmethod
    def from_file(cls, path: str | Path) -> Credential:
        """Read a credential file.

        :param path: Path to the mnemonic or private key file.
        :returns: Credential handle.
        :raises ConfigError: If the file is unreadable or empty.
        """
        try:
            secret = Path(path).read_text().strip()
        except OSError as e:
            raise ConfigError(f"Cannot read credential file {path}: {e.strerror}") from e
        if not secret:
            raise ConfigError(f"Credential file {path} is empty")
        return cls(path, secret)

    @property
    def is_mnemonic(self) -> bool:
        """True if the secret looks like a word list rather than a key."""
        return len(self._secret.split()) > 1

    def to_account(self) -> LocalAccount:
        """Derive the signing account.

        :returns: eth_account LocalAccount.
        :raises ConfigError: If the secret is not a valid mnemonic or key.
        """
        try:
            if self.is_mnemonic:
                Account.enable_unaudited_hdwallet_features()
                return Account.from_mnemonic(self._secret)
            return Account.from_key(self._secret)
        except Exception as e:
            # The underlying message may echo the secret.
            raise ConfigError(
                f"Credential file {self.path} does not hold a valid key "
                f"({type(e).__name__})"
            ) from None
