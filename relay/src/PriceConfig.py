"""PriceConfig: Loads the pusher's per-feed price configuration.

The price config is a YAML list with one entry per feed:

.. code-block:: yaml

    - alias: BTC/USD
      id: e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43
      time_difference: 60
      price_deviation_bps: 50
      chain: evm

``time_difference`` is the maximum on-chain staleness in seconds.
``price_deviation_bps`` is the minimum price move in basis points; the
older ``price_deviation`` key (percent) is accepted and converted. ``chain``
defaults to the adapter named on the command line.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .PriceUpdate import normalize_feed_id
from .PushDecisionEngine import PushTarget, PushThresholds

logger = logging.getLogger(__name__)


def parse_price_config(items: Any, default_chain: str) -> list[PushTarget]:
    """Build push targets from a decoded price config document.

    :param items: Decoded YAML document (expected: a list of mappings).
    :param default_chain: Chain used for entries without ``chain``.
    :returns: List of PushTarget.
    :raises ConfigError: If the document or an entry is malformed, or a
        feed is listed twice for the same chain.
    """
    if not isinstance(items, list) or not items:
        raise ConfigError("Price config must be a non-empty list of feeds")

    targets: list[PushTarget] = []
    seen: set[tuple[str, str]] = set()
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ConfigError(f"Price config entry #{index} must be a mapping")
        try:
            feed_id = normalize_feed_id(item["id"])
            max_staleness = float(item["time_difference"])
            if "price_deviation_bps" in item:
                min_deviation_bps = float(item["price_deviation_bps"])
            else:
                min_deviation_bps = float(item["price_deviation"]) * 100
            thresholds = PushThresholds(max_staleness, min_deviation_bps)
        except KeyError as e:
            raise ConfigError(f"Price config entry #{index} is missing {e}") from e
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Price config entry #{index} is invalid: {e}") from e

        chain = str(item.get("chain") or default_chain)
        if (chain, feed_id) in seen:
            raise ConfigError(f"Feed {feed_id} listed twice for chain {chain}")
        seen.add((chain, feed_id))

        targets.append(
            PushTarget(
                chain=chain,
                feed_id=feed_id,
                thresholds=thresholds,
                alias=item.get("alias"),
            )
        )
    return targets


def load_price_config(path: str | Path, default_chain: str) -> list[PushTarget]:
    """Read and parse a price config file.

    :param path: Path to the YAML file.
    :param default_chain: Chain used for entries without ``chain``.
    :returns: List of PushTarget.
    :raises ConfigError: If the file is unreadable or malformed.
    """
    try:
        with open(path, "r") as file:
            items = yaml.safe_load(file)
    except OSError as e:
        raise ConfigError(f"Cannot read price config {path}: {e.strerror}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Price config {path} is not valid YAML: {e}") from e

    targets = parse_price_config(items, default_chain)
    logger.info(f"Loaded {len(targets)} push targets from {path}")
    return targets
