"""
Target chain adapters.

Usage:
    from relay.src.chains import get_adapter_class, get_available_adapters

    # Get list of available adapters
    available = get_available_adapters()
    # ['evm']

    # Build an adapter from parsed CLI arguments
    adapter = get_adapter_class("evm").from_args(args)
"""

# Import base classes and utilities
from .base import (
    ADAPTER_REGISTRY,
    ChainAdapter,
    SubmissionResult,
    get_adapter_class,
    get_available_adapters,
    register_adapter,
)

# Import all adapter implementations to trigger registration
from .evm import EvmChainAdapter

__all__ = [
    # Base classes
    "ChainAdapter",
    "SubmissionResult",
    # Registry functions
    "register_adapter",
    "get_adapter_class",
    "get_available_adapters",
    "ADAPTER_REGISTRY",
    # Adapter implementations
    "EvmChainAdapter",
]
