"""Unit tests for Credential."""

import pytest

from relay.src.Credential import Credential
from relay.src.errors import ConfigError

# Well-known development key and mnemonic, never used on a live network.
DEV_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
DEV_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"
DEV_MNEMONIC = "test test test test test test test test test test test junk"
DEV_MNEMONIC_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


class TestCredential:
    """Test credential loading and secrecy."""

    def test_from_key_file(self, tmp_path) -> None:
        """A private key file should yield the matching account."""
        path = tmp_path / "key"
        path.write_text(DEV_KEY + "\n")
        credential = Credential.from_file(path)

        assert not credential.is_mnemonic
        assert credential.to_account().address == DEV_ADDRESS

    def test_from_mnemonic_file(self, tmp_path) -> None:
        """A mnemonic file should yield the first derived account."""
        path = tmp_path / "mnemonic"
        path.write_text(DEV_MNEMONIC)
        credential = Credential.from_file(path)

        assert credential.is_mnemonic
        assert credential.to_account().address == DEV_MNEMONIC_ADDRESS

    def test_repr_hides_secret(self, tmp_path) -> None:
        """repr and str should never reveal the secret."""
        path = tmp_path / "key"
        path.write_text(DEV_KEY)
        credential = Credential.from_file(path)

        for text in (repr(credential), str(credential), f"{credential}"):
            assert DEV_KEY not in text
            assert DEV_KEY[2:] not in text
            assert str(path) in text

    def test_missing_file(self, tmp_path) -> None:
        """A missing file should raise ConfigError."""
        with pytest.raises(ConfigError, match="Cannot read credential file"):
            Credential.from_file(tmp_path / "missing")

    def test_empty_file(self, tmp_path) -> None:
        """An empty file should raise ConfigError."""
        path = tmp_path / "empty"
        path.write_text("  \n")
        with pytest.raises(ConfigError, match="is empty"):
            Credential.from_file(path)

    def test_invalid_secret_not_echoed(self, tmp_path) -> None:
        """An invalid secret should raise without echoing it."""
        secret = "not a valid mnemonic phrase at all"
        path = tmp_path / "bad"
        path.write_text(secret)

        with pytest.raises(ConfigError) as excinfo:
            Credential.from_file(path).to_account()

        assert secret not in str(excinfo.value)
        assert excinfo.value.__cause__ is None
