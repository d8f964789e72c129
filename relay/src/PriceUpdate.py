"""PriceUpdate: Immutable price attestation and its cache entry.

A PriceUpdate is keyed by its feed id, a 32-byte price identifier stored as
lowercase hex without the ``0x`` prefix. The same identifier is used as the
cache key, in REST queries and in on-chain lookups.

Two JSON shapes are understood:

- the attestation message yielded by the attestation source::

    {"id": "e62d...", "price": "2612345", "conf": "120", "expo": -2,
     "publish_time": 1700000000, "sequence": 42,
     "emitter_chain": 26, "emitter_address": "a278...", "vaa": "<base64>"}

- the price feed object served by the REST API::

    {"id": "e62d...",
     "price": {"price": "2612345", "conf": "120", "expo": -2,
               "publish_time": 1700000000},
     "metadata": {"sequence_number": 42, "emitter_chain": 26,
                  "emitter_address": "a278..."},
     "vaa": "<base64>"}

.. code-block:: python

    >>> update = PriceUpdate.from_attestation(
    ...     {"id": "0xAB", "price": "100", "conf": "1", "expo": -2,
    ...      "publish_time": 10, "sequence": 1}
    ... )
    >>> update.feed_id
    'ab'
    >>> update.to_price_feed()["price"]["price"]
    '100'
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any

from .errors import IngestionError

FeedId = str


def normalize_feed_id(raw: str) -> FeedId:
    """Normalize a feed identifier to lowercase hex without ``0x``.

    :param raw: Feed id as received from a client or config file.
    :returns: Normalized feed id.
    :raises ValueError: If the id is empty or not hex.
    """
    if not isinstance(raw, str):
        raise ValueError(f"Feed id must be a string, got {type(raw).__name__}")
    feed_id = raw.strip().lower()
    if feed_id.startswith("0x"):
        feed_id = feed_id[2:]
    if not feed_id:
        raise ValueError("Feed id must not be empty")
    try:
        bytes.fromhex(feed_id)
    except ValueError:
        raise ValueError(f"Feed id is not valid hex: {raw!r}") from None
    return feed_id


@dataclass(frozen=True)
class PriceUpdate:
    """A single signed price observation for one feed.

    :ivar feed_id: Normalized feed identifier.
    :ivar price: Signed integer mantissa.
    :ivar conf: Confidence interval (non-negative mantissa).
    :ivar expo: Decimal exponent applied to price and conf.
    :ivar publish_time: Unix timestamp the price was published at.
    :ivar sequence: Per-feed sequence number, strictly increasing.
    :ivar emitter_chain: Source chain id of the attestation, if known.
    :ivar emitter_address: Source emitter address, if known.
    :ivar vaa: Raw signed attestation bytes, passed through to chains.
    """

    feed_id: FeedId
    price: int
    conf: int
    expo: int
    publish_time: int
    sequence: int
    emitter_chain: int | None = None
    emitter_address: str | None = None
    vaa: bytes | None = None

    def __post_init__(self) -> None:
        if self.conf < 0:
            raise ValueError("conf must be non-negative")
        if self.sequence < 0:
            raise ValueError("sequence must be non-negative")

    @property
    def price_float(self) -> float:
        """Price scaled by its exponent, for logging only."""
        return self.price * (10.0 ** self.expo)

    @classmethod
    def from_attestation(cls, message: dict[str, Any]) -> PriceUpdate:
        """Build a PriceUpdate from an attestation source message.

        :param message: Decoded JSON object from the attestation stream.
        :returns: New PriceUpdate.
        :raises IngestionError: If a field is missing or malformed.
        """
        try:
            return cls(
                feed_id=normalize_feed_id(message["id"]),
                price=int(message["price"]),
                conf=int(message["conf"]),
                expo=int(message["expo"]),
                publish_time=int(message["publish_time"]),
                sequence=int(message["sequence"]),
                emitter_chain=_optional_int(message.get("emitter_chain")),
                emitter_address=_optional_address(message.get("emitter_address")),
                vaa=_decode_vaa(message.get("vaa")),
            )
        except (KeyError, TypeError, ValueError, OverflowError, binascii.Error) as e:
            raise IngestionError(f"Malformed attestation: {e!r}") from e

    @classmethod
    def from_price_feed(cls, feed: dict[str, Any]) -> PriceUpdate:
        """Build a PriceUpdate from a REST price feed object.

        :param feed: Price feed object as returned by ``/api/latest_price_feeds``.
        :returns: New PriceUpdate.
        :raises IngestionError: If a field is missing or malformed.
        """
        try:
            price = feed["price"]
            metadata = feed.get("metadata") or {}
            return cls(
                feed_id=normalize_feed_id(feed["id"]),
                price=int(price["price"]),
                conf=int(price["conf"]),
                expo=int(price["expo"]),
                publish_time=int(price["publish_time"]),
                sequence=int(metadata.get("sequence_number", price["publish_time"])),
                emitter_chain=_optional_int(metadata.get("emitter_chain")),
                emitter_address=_optional_address(metadata.get("emitter_address")),
                vaa=_decode_vaa(feed.get("vaa")),
            )
        except (KeyError, TypeError, ValueError, OverflowError, binascii.Error) as e:
            raise IngestionError(f"Malformed price feed: {e!r}") from e

    def to_price_feed(self, *, binary: bool = False) -> dict[str, Any]:
        """Serialize to the REST price feed object.

        :param binary: Include the base64 attestation payload.
        :returns: JSON-serializable dict.
        """
        feed: dict[str, Any] = {
            "id": self.feed_id,
            "price": {
                "price": str(self.price),
                "conf": str(self.conf),
                "expo": self.expo,
                "publish_time": self.publish_time,
            },
            "metadata": {
                "sequence_number": self.sequence,
                "emitter_chain": self.emitter_chain,
                "emitter_address": self.emitter_address,
            },
        }
        if binary and self.vaa is not None:
            feed["vaa"] = base64.b64encode(self.vaa).decode("ascii")
        return feed


@dataclass(frozen=True)
class CacheEntry:
    """Latest known update for a feed plus its local arrival time.

    :ivar latest: Most recent accepted PriceUpdate.
    :ivar received_at: Unix timestamp the update was accepted at.
    """

    latest: PriceUpdate
    received_at: float


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _optional_address(value: Any) -> str | None:
    if value is None:
        return None
    return normalize_feed_id(value)


def _decode_vaa(value: Any) -> bytes | None:
    if value is None:
        return None
    return base64.b64decode(value, validate=True)
