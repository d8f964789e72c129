"""Unit tests for PriceUpdate."""

import base64

import pytest

from relay.src.errors import IngestionError
from relay.src.PriceUpdate import PriceUpdate, normalize_feed_id

FEED = "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43"


def attestation(**overrides) -> dict:
    message = {
        "id": FEED,
        "price": "2612345",
        "conf": "120",
        "expo": -2,
        "publish_time": 1700000000,
        "sequence": 42,
        "emitter_chain": 26,
        "emitter_address": "A278",
        "vaa": base64.b64encode(b"signed").decode(),
    }
    message.update(overrides)
    return message


class TestNormalizeFeedId:
    """Test feed id normalization."""

    def test_strips_prefix_and_lowercases(self) -> None:
        """0x prefix and case should not matter."""
        assert normalize_feed_id("0xABcd") == "abcd"
        assert normalize_feed_id("  abcd ") == "abcd"

    def test_rejects_non_hex(self) -> None:
        """Non-hex ids should be rejected."""
        with pytest.raises(ValueError, match="not valid hex"):
            normalize_feed_id("0xzz")

    def test_rejects_empty(self) -> None:
        """Empty ids should be rejected."""
        with pytest.raises(ValueError, match="must not be empty"):
            normalize_feed_id("0x")

    def test_rejects_non_string(self) -> None:
        """Non-string ids should be rejected."""
        with pytest.raises(ValueError, match="must be a string"):
            normalize_feed_id(123)


class TestPriceUpdate:
    """Test PriceUpdate construction and serialization."""

    def test_from_attestation(self) -> None:
        """All attestation fields should be parsed."""
        update = PriceUpdate.from_attestation(attestation(id="0x" + FEED.upper()))

        assert update.feed_id == FEED
        assert update.price == 2612345
        assert update.conf == 120
        assert update.expo == -2
        assert update.publish_time == 1700000000
        assert update.sequence == 42
        assert update.emitter_chain == 26
        assert update.emitter_address == "a278"
        assert update.vaa == b"signed"
        assert update.price_float == pytest.approx(26123.45)

    def test_optional_fields_default_to_none(self) -> None:
        """Emitter and attestation bytes are optional."""
        message = attestation()
        del message["emitter_chain"], message["emitter_address"], message["vaa"]
        update = PriceUpdate.from_attestation(message)

        assert update.emitter_chain is None
        assert update.emitter_address is None
        assert update.vaa is None

    def test_negative_price_allowed(self) -> None:
        """Price mantissa is signed."""
        assert PriceUpdate.from_attestation(attestation(price="-5")).price == -5

    def test_missing_field_raises(self) -> None:
        """A missing required field should raise IngestionError."""
        message = attestation()
        del message["sequence"]
        with pytest.raises(IngestionError, match="Malformed attestation"):
            PriceUpdate.from_attestation(message)

    def test_negative_conf_raises(self) -> None:
        """Confidence must be non-negative."""
        with pytest.raises(IngestionError):
            PriceUpdate.from_attestation(attestation(conf="-1"))

    def test_bad_vaa_raises(self) -> None:
        """Attestation bytes must be valid base64."""
        with pytest.raises(IngestionError):
            PriceUpdate.from_attestation(attestation(vaa="not base64!"))

    def test_is_immutable(self) -> None:
        """PriceUpdate should be frozen."""
        update = PriceUpdate.from_attestation(attestation())
        with pytest.raises(AttributeError):
            update.price = 1

    def test_to_price_feed(self) -> None:
        """Price values should be serialized as strings."""
        feed = PriceUpdate.from_attestation(attestation()).to_price_feed()

        assert feed["id"] == FEED
        assert feed["price"] == {
            "price": "2612345",
            "conf": "120",
            "expo": -2,
            "publish_time": 1700000000,
        }
        assert feed["metadata"]["sequence_number"] == 42
        assert "vaa" not in feed

    def test_to_price_feed_binary(self) -> None:
        """Binary mode should include the base64 attestation."""
        feed = PriceUpdate.from_attestation(attestation()).to_price_feed(binary=True)
        assert base64.b64decode(feed["vaa"]) == b"signed"

    def test_from_price_feed_reads_served_shape(self) -> None:
        """A served price feed should parse back to the same update."""
        original = PriceUpdate.from_attestation(attestation())
        feed = original.to_price_feed(binary=True)

        assert feed["metadata"]["emitter_address"] == "a278"
        assert PriceUpdate.from_price_feed(feed) == original

    def test_infinite_price_raises_ingestion_error(self) -> None:
        """A price too large for an integer should be a parse error."""
        with pytest.raises(IngestionError, match="Malformed attestation"):
            PriceUpdate.from_attestation(attestation(price=float("inf")))

        feed = PriceUpdate.from_attestation(attestation()).to_price_feed()
        feed["price"]["price"] = float("inf")
        with pytest.raises(IngestionError, match="Malformed price feed"):
            PriceUpdate.from_price_feed(feed)

    def test_from_price_feed_without_metadata(self) -> None:
        """Sequence falls back to the publish time."""
        feed = {
            "id": FEED,
            "price": {"price": "1", "conf": "0", "expo": 0, "publish_time": 99},
        }
        assert PriceUpdate.from_price_feed(feed).sequence == 99

    def test_from_price_feed_malformed(self) -> None:
        """A feed without a price object should raise IngestionError."""
        with pytest.raises(IngestionError, match="Malformed price feed"):
            PriceUpdate.from_price_feed({"id": FEED})
