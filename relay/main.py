#!/usr/bin/env python3
"""Price Attestation Relay.

Two processes share this entry point:

- ``serve``: ingests signed price attestations into a cache and serves
  them over REST, WebSocket and Prometheus endpoints.
- ``push <adapter>``: polls a price service and submits updates to a
  target chain when staleness or deviation thresholds are crossed.

Start via Docker Compose with env vars. CLI args take precedence.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.AttestationListener import WebSocketAttestationSource, parse_filters
from .src.chains import get_adapter_class, get_available_adapters
from .src.errors import ConfigError
from .src.PriceConfig import load_price_config
from .src.PricePusher import PricePusher
from .src.PriceService import PriceService
from .src.PriceServiceConnection import PriceServiceConnection

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name) or default)


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name) or default)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        dest="log_level",
        type=str,
        help="Log level: debug, info, warning, error (default: info)",
        default=os.environ.get("LOG_LEVEL") or "info",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )


def _add_serve_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "serve",
        help="Run the price service (ingestion, cache and read API)",
        description="Ingest price attestations and serve them to downstream clients.",
    )
    _add_common_arguments(parser)

    parser.add_argument(
        "--spy-service-host",
        dest="spy_service_host",
        type=str,
        help="Attestation source address, host:port or ws:// URL",
        default=os.environ.get("SPY_SERVICE_HOST"),
    )
    parser.add_argument(
        "--spy-service-filters",
        dest="spy_service_filters",
        type=str,
        help='Emitter allow-list, JSON array of {"chain_id", "emitter_address"}',
        default=os.environ.get("SPY_SERVICE_FILTERS"),
    )
    parser.add_argument(
        "--readiness-sync-time",
        dest="readiness_sync_time",
        type=float,
        help="Seconds after start before the service may report ready (default: 20)",
        default=_env_float("READINESS_SPY_SYNC_TIME_SECONDS", 20),
    )
    parser.add_argument(
        "--readiness-num-symbols",
        dest="readiness_num_symbols",
        type=int,
        help="Feeds that must be loaded before the service may report ready (default: 50)",
        default=_env_int("READINESS_NUM_LOADED_SYMBOLS", 50),
    )
    parser.add_argument(
        "--cache-ttl",
        dest="cache_ttl",
        type=float,
        help="Seconds after which a feed without updates is evicted (default: 900)",
        default=_env_float("CACHE_TTL_SECONDS", 900),
    )
    parser.add_argument(
        "--sweep-interval",
        dest="sweep_interval",
        type=float,
        help="Seconds between expiry sweeps (default: 60)",
        default=_env_float("REMOVE_EXPIRED_VALUES_INTERVAL_SECONDS", 60),
    )
    parser.add_argument(
        "--subscriber-buffer-size",
        dest="subscriber_buffer_size",
        type=int,
        help="Updates buffered per stream subscriber before dropping (default: 100)",
        default=_env_int("SUBSCRIBER_BUFFER_SIZE", 100),
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Interface to bind the HTTP servers to (default: 0.0.0.0)",
        default=os.environ.get("HOST") or "0.0.0.0",
    )
    parser.add_argument(
        "--rest-port",
        dest="rest_port",
        type=int,
        help="REST API port (default: 4200)",
        default=_env_int("REST_PORT", 4200),
    )
    parser.add_argument(
        "--ws-port",
        dest="ws_port",
        type=int,
        help="WebSocket stream port (default: 6200)",
        default=_env_int("WS_PORT", 6200),
    )
    parser.add_argument(
        "--prom-port",
        dest="prom_port",
        type=int,
        help="Prometheus metrics port, 0 to disable (default: 8081)",
        default=_env_int("PROM_PORT", 8081),
    )
    parser.set_defaults(handler=run_serve)


def _add_push_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "push",
        help="Run the price pusher against a target chain",
        description="Push cached prices on-chain when thresholds are crossed.",
    )
    adapters = parser.add_subparsers(dest="adapter", metavar="<adapter>", required=True)

    for name in get_available_adapters():
        adapter_cls = get_adapter_class(name)
        adapter_parser = adapters.add_parser(name, help=f"Push to {name} chains")
        _add_common_arguments(adapter_parser)
        adapter_parser.add_argument(
            "--endpoint",
            type=str,
            required=True,
            help="Chain RPC endpoint URL",
        )
        adapter_parser.add_argument(
            "--credential-file",
            dest="credential_file",
            type=str,
            required=True,
            help="File holding the signing mnemonic or private key",
        )
        adapter_parser.add_argument(
            "--contract-address",
            dest="contract_address",
            type=str,
            required=True,
            help="Address of the price contract on the target chain",
        )
        adapter_parser.add_argument(
            "--price-service-endpoint",
            dest="price_service_endpoint",
            type=str,
            required=True,
            help="Base URL of the price service",
        )
        adapter_parser.add_argument(
            "--price-config-file",
            dest="price_config_file",
            type=str,
            required=True,
            help="YAML file listing feeds and their push thresholds",
        )
        adapter_parser.add_argument(
            "--pushing-frequency",
            dest="pushing_frequency",
            type=float,
            help="Seconds between push decisions (default: 10)",
            default=10.0,
        )
        adapter_parser.add_argument(
            "--polling-frequency",
            dest="polling_frequency",
            type=float,
            help="Seconds between price service polls (default: 5)",
            default=5.0,
        )
        adapter_parser.add_argument(
            "--max-attempts",
            dest="max_attempts",
            type=int,
            help="Submission attempts per tick before giving up (default: 3)",
            default=3,
        )
        adapter_parser.add_argument(
            "--max-batch-size",
            dest="max_batch_size",
            type=int,
            help="Maximum feeds per transaction, stalest first (default: unlimited)",
            default=None,
        )
        adapter_parser.add_argument(
            "--prom-port",
            dest="prom_port",
            type=int,
            help="Prometheus metrics port, 0 to disable (default: 0)",
            default=_env_int("PROM_PORT", 0),
        )
        adapter_cls.add_arguments(adapter_parser)
        adapter_parser.set_defaults(handler=run_push)


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser."""
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Price Attestation Relay: price service and on-chain price pusher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Price service fed by an attestation listener
  SPY_SERVICE_HOST=spy:7072 python -m relay.main serve

  # Push to an EVM chain
  python -m relay.main push evm \\
      --endpoint https://rpc.example.org \\
      --credential-file /mnemonic \\
      --contract-address 0xff1a0f4744e8582DF1aE09D5611b887B6a12925C \\
      --price-service-endpoint http://price-service:4200 \\
      --price-config-file /price_config

Environment variables (serve):
  SPY_SERVICE_HOST, SPY_SERVICE_FILTERS, READINESS_SPY_SYNC_TIME_SECONDS,
  READINESS_NUM_LOADED_SYMBOLS, CACHE_TTL_SECONDS,
  REMOVE_EXPIRED_VALUES_INTERVAL_SECONDS, REST_PORT, WS_PORT, PROM_PORT,
  LOG_LEVEL
""",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="<command>", required=True)
    _add_serve_parser(subparsers)
    _add_push_parser(subparsers)
    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.verbose else getattr(logging, args.log_level.upper(), None)
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level {args.log_level!r}")
    logging.getLogger().setLevel(level)


def run_serve(args: argparse.Namespace) -> None:
    """Start the price service."""
    if not args.spy_service_host:
        raise ConfigError("SPY_SERVICE_HOST (or --spy-service-host) is required")
    if args.sweep_interval <= 0:
        raise ConfigError("--sweep-interval must be positive")
    if args.cache_ttl <= 0:
        raise ConfigError("--cache-ttl must be positive")

    filters = parse_filters(args.spy_service_filters)

    logger.info("=" * 60)
    logger.info("Price Service")
    logger.info("=" * 60)
    logger.info(f"Attestation Source: {args.spy_service_host}")
    logger.info(f"Emitter Filters:    {len(filters) or 'none (accept all)'}")
    logger.info(f"Readiness:          {args.readiness_sync_time}s, {args.readiness_num_symbols} feeds")
    logger.info(f"Cache TTL:          {args.cache_ttl}s (sweep every {args.sweep_interval}s)")
    logger.info(f"Ports:              REST {args.rest_port}, WS {args.ws_port}, metrics {args.prom_port or 'off'}")
    logger.info("=" * 60)

    service = PriceService(
        source=WebSocketAttestationSource(args.spy_service_host, filters),
        filters=filters,
        host=args.host,
        rest_port=args.rest_port,
        ws_port=args.ws_port,
        prom_port=args.prom_port or None,
        sync_time_seconds=args.readiness_sync_time,
        min_loaded_symbols=args.readiness_num_symbols,
        cache_ttl_seconds=args.cache_ttl,
        sweep_interval_seconds=args.sweep_interval,
        subscriber_buffer_size=args.subscriber_buffer_size,
        log_level=args.log_level.lower(),
    )
    asyncio.run(service.run())


def run_push(args: argparse.Namespace) -> None:
    """Start the price pusher."""
    if args.pushing_frequency <= 0:
        raise ConfigError("--pushing-frequency must be positive")
    if args.polling_frequency <= 0:
        raise ConfigError("--polling-frequency must be positive")
    if args.max_attempts < 1:
        raise ConfigError("--max-attempts must be at least 1")

    targets = load_price_config(args.price_config_file, default_chain=args.adapter)
    adapter = get_adapter_class(args.adapter).from_args(args)

    logger.info("=" * 60)
    logger.info("Price Pusher")
    logger.info("=" * 60)
    logger.info(f"Adapter:            {args.adapter}")
    logger.info(f"Endpoint:           {args.endpoint}")
    logger.info(f"Contract:           {args.contract_address}")
    logger.info(f"Price Service:      {args.price_service_endpoint}")
    logger.info(f"Feeds:              {', '.join(t.label for t in targets)}")
    logger.info(f"Pushing Frequency:  {args.pushing_frequency}s")
    logger.info(f"Polling Frequency:  {args.polling_frequency}s")
    logger.info(f"Max Attempts:       {args.max_attempts}")
    logger.info("=" * 60)

    pusher = PricePusher(
        adapter=adapter,
        targets=targets,
        price_service=PriceServiceConnection(args.price_service_endpoint),
        pushing_frequency=args.pushing_frequency,
        polling_frequency=args.polling_frequency,
        max_attempts=args.max_attempts,
        max_batch_size=args.max_batch_size,
        prom_port=args.prom_port or None,
    )
    asyncio.run(pusher.run())


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the relay CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        _configure_logging(args)
        args.handler(args)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
