"""EVM chain adapter.

Submits batches of signed attestations to a Pyth-style price contract:

- ``getUpdateFee(bytes[])`` quotes the fee for a batch
- ``updatePriceFeeds(bytes[])`` verifies and stores the batch (payable)
- ``getPriceUnsafe(bytes32)`` returns the stored price without age checks

Transactions are signed locally by a key derived from the credential file.
"""

from __future__ import annotations

import argparse
import logging

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.middleware import SignAndSendRawMiddlewareBuilder

from ..Credential import Credential
from ..errors import ConfigError, SubmissionError
from ..PriceUpdate import FeedId, PriceUpdate
from .base import ChainAdapter, SubmissionResult, register_adapter

logger = logging.getLogger(__name__)

PRICE_CONTRACT_ABI = [
    {
        "type": "function",
        "name": "getPriceUnsafe",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "bytes32"}],
        "outputs": [
            {
                "name": "price",
                "type": "tuple",
                "components": [
                    {"name": "price", "type": "int64"},
                    {"name": "conf", "type": "uint64"},
                    {"name": "expo", "type": "int32"},
                    {"name": "publishTime", "type": "uint256"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "getUpdateFee",
        "stateMutability": "view",
        "inputs": [{"name": "updateData", "type": "bytes[]"}],
        "outputs": [{"name": "feeAmount", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "updatePriceFeeds",
        "stateMutability": "payable",
        "inputs": [{"name": "updateData", "type": "bytes[]"}],
        "outputs": [],
    },
]


@register_adapter
class EvmChainAdapter(ChainAdapter):
    """Adapter for EVM chains hosting a Pyth-style price contract.

    :ivar w3: Web3 instance with a signing middleware for ``account``.
    :ivar contract: Price contract instance.
    :ivar tx_timeout: Seconds to wait for a transaction receipt.
    """

    name = "evm"

    DEFAULT_TX_TIMEOUT = 120.0

    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        account: LocalAccount | None = None,
        tx_timeout: float = DEFAULT_TX_TIMEOUT,
    ) -> None:
        """Initialize the adapter.

        :param w3: Web3 instance connected to the chain endpoint.
        :param contract_address: Address of the price contract.
        :param account: Signing account; None makes the adapter read-only.
        :param tx_timeout: Receipt wait timeout in seconds (default: 120).
        :raises ConfigError: If the contract address is invalid.
        """
        try:
            address = Web3.to_checksum_address(contract_address)
        except ValueError as e:
            raise ConfigError(f"Invalid contract address {contract_address!r}") from e

        self.w3 = w3
        self.tx_timeout = tx_timeout
        self.account = account
        if account is not None:
            self.w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(account))
            self.w3.eth.default_account = account.address
        self.contract = self.w3.eth.contract(address=address, abi=PRICE_CONTRACT_ABI)

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--tx-timeout",
            dest="tx_timeout",
            type=float,
            help=f"Seconds to wait for a transaction receipt (default: {cls.DEFAULT_TX_TIMEOUT})",
            default=cls.DEFAULT_TX_TIMEOUT,
        )

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> EvmChainAdapter:
        credential = Credential.from_file(args.credential_file)
        w3 = Web3(Web3.HTTPProvider(args.endpoint))
        return cls(
            w3=w3,
            contract_address=args.contract_address,
            account=credential.to_account(),
            tx_timeout=args.tx_timeout,
        )

    def query_on_chain_price(self, feed_id: FeedId) -> PriceUpdate | None:
        """Read the stored price of a feed.

        :param feed_id: Normalized feed id.
        :returns: PriceUpdate built from the stored price, or None if the
            contract has no price for this feed yet.
        """
        try:
            price, conf, expo, publish_time = self.contract.functions.getPriceUnsafe(
                bytes.fromhex(feed_id)
            ).call()
        except ContractLogicError:
            return None

        if publish_time == 0:
            return None
        return PriceUpdate(
            feed_id=feed_id,
            price=price,
            conf=conf,
            expo=expo,
            publish_time=publish_time,
            sequence=publish_time,
        )

    def submit(self, batch: list[PriceUpdate]) -> SubmissionResult:
        """Submit all attestations of the batch in one transaction.

        :param batch: Updates carrying their signed attestation bytes.
        :returns: SubmissionResult with the transaction hash.
        :raises SubmissionError: If an update has no attestation bytes, or
            the transaction fails or reverts.
        """
        if self.account is None:
            raise SubmissionError(self.name, "Adapter has no signing account")
        missing = [u.feed_id for u in batch if u.vaa is None]
        if missing:
            raise SubmissionError(self.name, f"Updates without attestation bytes: {missing}")

        update_data = [u.vaa for u in batch]
        try:
            fee = self.contract.functions.getUpdateFee(update_data).call()
            tx_params = self.contract.functions.updatePriceFeeds(update_data).build_transaction(
                {"value": fee, "gasPrice": self.w3.eth.gas_price}
            )
            tx_hash = self.w3.eth.send_transaction(tx_params)
            tx_receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.tx_timeout
            )
        except Exception as e:
            raise SubmissionError(self.name, f"{type(e).__name__}: {e}") from e

        if tx_receipt["status"] != 1:
            raise SubmissionError(self.name, f"Transaction {tx_hash.hex()} reverted")

        logger.debug(
            f"Batch of {len(batch)} committed in {tx_hash.hex()} "
            f"(fee={fee}, gas_used={tx_receipt['gasUsed']})"
        )
        return SubmissionResult(committed_updates=list(batch), tx_handle=tx_hash.hex())
