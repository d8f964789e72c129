"""
Price Attestation Relay - Price Service and Price Pusher

This module provides the relay's building blocks:
- PriceUpdate: Signed price observation of one feed
- FeedCache: Latest-value cache with monotonic upserts and TTL eviction
- ReadinessGate: Startup gate for every read path
- SubscriberHub: Fan-out of accepted updates to stream subscribers
- AttestationListener: Ingestion of the attestation stream
- PushDecisionEngine: Staleness and deviation driven on-chain pushes
- chains: Chain adapter implementations
"""

from .AttestationListener import AttestationListener, EmitterFilter
from .Backoff import ExponentialBackoff
from .FeedCache import FeedCache, UpsertResult
from .PriceUpdate import CacheEntry, PriceUpdate
from .PushDecisionEngine import PushDecision, PushDecisionEngine, PushTarget, PushThresholds
from .ReadinessGate import ReadinessGate
from .SubscriberHub import SubscriberHub, Subscription

__all__ = [
    "AttestationListener",
    "CacheEntry",
    "EmitterFilter",
    "ExponentialBackoff",
    "FeedCache",
    "PriceUpdate",
    "PushDecision",
    "PushDecisionEngine",
    "PushTarget",
    "PushThresholds",
    "ReadinessGate",
    "SubscriberHub",
    "Subscription",
    "UpsertResult",
]
