"""Chain adapter interface and registry.

A chain adapter is the only component that talks to a target chain. The
push engine treats it as a black box that can:

- submit a batch of price updates in one transaction
- report the price currently stored on-chain for a feed

Both calls block on network I/O; the engine runs them in worker threads.
Resubmitting an already committed batch must be harmless.

.. code-block:: python

    @register_adapter
    class MyChainAdapter(ChainAdapter):
        name = "mychain"

        def submit(self, batch: list[PriceUpdate]) -> SubmissionResult:
            tx = self.client.send(batch)
            return SubmissionResult(committed_updates=batch, tx_handle=tx.id)

        def query_on_chain_price(self, feed_id: FeedId) -> PriceUpdate | None:
            ...
"""

from __future__ import annotations

import argparse
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..PriceUpdate import FeedId, PriceUpdate


@dataclass
class SubmissionResult:
    """Outcome of a successful batch submission.

    :ivar committed_updates: Updates the chain accepted.
    :ivar tx_handle: Chain-specific transaction reference (e.g. a tx hash).
    """

    committed_updates: list[PriceUpdate] = field(default_factory=list)
    tx_handle: Any = None


class ChainAdapter(ABC):
    """Abstract base class for target chain adapters.

    Subclasses must implement:
        - name: Class variable identifying the chain family (e.g., "evm")
        - submit(): Send a batch of updates in one transaction
        - query_on_chain_price(): Read the stored price of one feed

    :cvar name: Unique identifier, also the CLI subcommand name.
    """

    name: ClassVar[str] = ""

    @abstractmethod
    def submit(self, batch: list[PriceUpdate]) -> SubmissionResult:
        """Submit a batch of price updates.

        :param batch: Updates to publish on-chain.
        :returns: SubmissionResult with the committed updates.
        :raises SubmissionError: On RPC error, rejected transaction or timeout.
        """
        pass

    @abstractmethod
    def query_on_chain_price(self, feed_id: FeedId) -> PriceUpdate | None:
        """Read the latest on-chain price for a feed.

        :param feed_id: Normalized feed id.
        :returns: On-chain PriceUpdate, or None if the feed was never pushed.
        """
        pass

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        """Add adapter-specific CLI options. Override in subclasses."""
        pass

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> ChainAdapter:
        """Build the adapter from parsed CLI arguments.

        :param args: Parsed arguments of the adapter subcommand.
        :returns: Configured adapter.
        :raises ConfigError: If the arguments cannot produce an adapter.
        """
        raise NotImplementedError(f"{cls.__name__} cannot be built from CLI arguments")


# Registry of available adapters (populated by subclass imports)
ADAPTER_REGISTRY: dict[str, type[ChainAdapter]] = {}


def register_adapter(cls: type[ChainAdapter]) -> type[ChainAdapter]:
    """Decorator to register a chain adapter class.

    :param cls: Adapter class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If the adapter has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Adapter {cls.__name__} must define a 'name' class variable")
    ADAPTER_REGISTRY[cls.name] = cls
    return cls


def get_adapter_class(name: str) -> type[ChainAdapter]:
    """Look up an adapter class by name.

    :param name: Adapter name (e.g., "evm").
    :returns: Adapter class.
    :raises ValueError: If the name is unknown.
    """
    if name not in ADAPTER_REGISTRY:
        available = ", ".join(sorted(ADAPTER_REGISTRY.keys()))
        raise ValueError(f"Unknown chain adapter '{name}'. Available: {available}")
    return ADAPTER_REGISTRY[name]


def get_available_adapters() -> list[str]:
    """Get list of registered adapter names.

    :returns: Sorted list of adapter names.
    """
    return sorted(ADAPTER_REGISTRY.keys())
