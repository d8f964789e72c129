"""Unit tests for the EVM chain adapter."""

import argparse
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from web3.exceptions import ContractLogicError

from relay.src.chains import EvmChainAdapter, get_adapter_class, get_available_adapters
from relay.src.errors import ConfigError, SubmissionError
from relay.src.PriceUpdate import PriceUpdate

CONTRACT = "0xff1a0f4744e8582df1ae09d5611b887b6a12925c"
DEV_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
FEED = "aa" * 32


def make_update(vaa: bytes | None = b"signed") -> PriceUpdate:
    return PriceUpdate(
        feed_id=FEED, price=1000, conf=1, expo=-2, publish_time=100, sequence=7, vaa=vaa
    )


def make_adapter(account=None) -> tuple[EvmChainAdapter, MagicMock, MagicMock]:
    w3 = MagicMock()
    contract = MagicMock()
    w3.eth.contract.return_value = contract
    adapter = EvmChainAdapter(w3, CONTRACT, account=account, tx_timeout=5)
    return adapter, w3, contract


class TestRegistry:
    """Test adapter registration."""

    def test_evm_registered(self) -> None:
        """The EVM adapter should be available by name."""
        assert "evm" in get_available_adapters()
        assert get_adapter_class("evm") is EvmChainAdapter

    def test_unknown_adapter(self) -> None:
        """Unknown names should raise ValueError."""
        with pytest.raises(ValueError, match="Unknown chain adapter 'nope'"):
            get_adapter_class("nope")

    def test_add_arguments(self) -> None:
        """The adapter should contribute its CLI options."""
        parser = argparse.ArgumentParser()
        EvmChainAdapter.add_arguments(parser)
        assert parser.parse_args(["--tx-timeout", "30"]).tx_timeout == 30.0


class TestEvmChainAdapterInit:
    """Test adapter construction."""

    def test_invalid_address(self) -> None:
        """A malformed contract address should raise ConfigError."""
        with pytest.raises(ConfigError, match="Invalid contract address"):
            EvmChainAdapter(MagicMock(), "0x1234")

    def test_checksums_address(self) -> None:
        """The contract should be bound to the checksummed address."""
        _, w3, _ = make_adapter()
        address = w3.eth.contract.call_args.kwargs["address"]
        assert address == "0xff1a0f4744e8582DF1aE09D5611b887B6a12925C"

    def test_account_sets_default(self) -> None:
        """A signing account should become the default sender."""
        account = Account.from_key(DEV_KEY)
        _, w3, _ = make_adapter(account)
        assert w3.eth.default_account == account.address
        w3.middleware_onion.add.assert_called_once()


class TestQueryOnChainPrice:
    """Test on-chain price reads."""

    def test_returns_stored_price(self) -> None:
        """The stored price should be returned as a PriceUpdate."""
        adapter, _, contract = make_adapter()
        contract.functions.getPriceUnsafe.return_value.call.return_value = (1234, 5, -2, 1700000000)

        update = adapter.query_on_chain_price(FEED)

        contract.functions.getPriceUnsafe.assert_called_with(bytes.fromhex(FEED))
        assert update.price == 1234
        assert update.conf == 5
        assert update.expo == -2
        assert update.publish_time == 1700000000

    def test_never_pushed(self) -> None:
        """A zero publish time should mean no price."""
        adapter, _, contract = make_adapter()
        contract.functions.getPriceUnsafe.return_value.call.return_value = (0, 0, 0, 0)
        assert adapter.query_on_chain_price(FEED) is None

    def test_revert_means_no_price(self) -> None:
        """A reverting read should mean no price."""
        adapter, _, contract = make_adapter()
        contract.functions.getPriceUnsafe.return_value.call.side_effect = ContractLogicError(
            "PriceFeedNotFound"
        )
        assert adapter.query_on_chain_price(FEED) is None


class TestSubmit:
    """Test batch submission."""

    def test_requires_account(self) -> None:
        """A read-only adapter should refuse to submit."""
        adapter, _, _ = make_adapter()
        with pytest.raises(SubmissionError, match="no signing account"):
            adapter.submit([make_update()])

    def test_requires_attestation_bytes(self) -> None:
        """Updates without attestation bytes cannot be submitted."""
        adapter, _, _ = make_adapter(Account.from_key(DEV_KEY))
        with pytest.raises(SubmissionError, match="without attestation bytes"):
            adapter.submit([make_update(vaa=None)])

    def test_success(self) -> None:
        """A mined transaction should commit the whole batch."""
        adapter, w3, contract = make_adapter(Account.from_key(DEV_KEY))
        contract.functions.getUpdateFee.return_value.call.return_value = 10
        contract.functions.updatePriceFeeds.return_value.build_transaction.return_value = {"to": CONTRACT}
        tx_hash = MagicMock()
        tx_hash.hex.return_value = "0xabc"
        w3.eth.send_transaction.return_value = tx_hash
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "gasUsed": 21000}

        batch = [make_update()]
        result = adapter.submit(batch)

        contract.functions.getUpdateFee.assert_called_with([b"signed"])
        contract.functions.updatePriceFeeds.assert_called_with([b"signed"])
        build_args = contract.functions.updatePriceFeeds.return_value.build_transaction.call_args
        assert build_args.args[0]["value"] == 10
        w3.eth.wait_for_transaction_receipt.assert_called_with(tx_hash, timeout=5)
        assert result.committed_updates == batch
        assert result.tx_handle == "0xabc"

    def test_revert(self) -> None:
        """A reverted transaction should raise SubmissionError."""
        adapter, w3, contract = make_adapter(Account.from_key(DEV_KEY))
        contract.functions.getUpdateFee.return_value.call.return_value = 10
        tx_hash = MagicMock()
        tx_hash.hex.return_value = "0xabc"
        w3.eth.send_transaction.return_value = tx_hash
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "gasUsed": 21000}

        with pytest.raises(SubmissionError, match="reverted"):
            adapter.submit([make_update()])

    def test_rpc_error(self) -> None:
        """RPC failures should be wrapped in SubmissionError."""
        adapter, w3, contract = make_adapter(Account.from_key(DEV_KEY))
        contract.functions.getUpdateFee.return_value.call.side_effect = ConnectionError("down")

        with pytest.raises(SubmissionError, match=r"\[evm\] ConnectionError: down"):
            adapter.submit([make_update()])
