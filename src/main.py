"""Main entry point module.

Handles CLI arguments, logging setup, signal handling, and hands the loaded
configuration to the collector.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Any, Optional

import collector
import config as config_module
import database
import reporter


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Configure logging for the application.

    Diagnostics go to log_file when one is given so the console only
    carries collection progress.

    Args:
        level: Logging level (default: INFO)
        log_file: Optional file to append log records to
    """
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        filename=log_file,
        filemode="a",
        force=True,
    )


def install_signal_handlers(interrupt_event: threading.Event) -> None:
    """Set interrupt_event on SIGINT or SIGTERM."""

    def handle_signal(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown...")
        interrupt_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Collect KPI metrics from Prometheus/Thanos into SQLite or PostgreSQL"
    )
    parser.add_argument(
        "--config", required=True, help="Path to runtime configuration YAML file"
    )
    parser.add_argument(
        "--kpis-file", required=True, help="Path to KPI definitions (JSON or YAML)"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0 for a completed or interrupted run, 1 on startup errors)
    """
    args = parse_args(argv)
    out = reporter.Reporter()

    # Load configuration first
    try:
        cfg = config_module.load_config(args.config)
        kpis = config_module.load_kpis(args.kpis_file)
        kpis = config_module.prepare_kpis(kpis, cfg.cluster)
    except config_module.ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        return 1

    log_level = logging.DEBUG if args.debug else getattr(logging, cfg.logging.level)
    try:
        setup_logging(log_level, cfg.logging.file)
    except OSError as e:
        print(f"ERROR: failed to open log file: {e}", file=sys.stderr)
        return 1

    logger.info(f"Configuration loaded from {args.config}, {len(kpis)} KPIs from {args.kpis_file}")
    out.print_message(f"Cluster: {cfg.cluster.name}")

    if cfg.thanos.insecure_tls:
        logger.warning("TLS certificate verification is disabled")
        out.print_message(
            "WARNING: TLS certificate verification is disabled. "
            "Use only in development environments."
        )

    for warning in config_module.frequency_warnings(kpis, cfg.sampling):
        out.print_message(warning)

    # Open the store once for the whole run
    try:
        db = database.init_database(cfg.database)
        logger.info(f"Database initialized ({cfg.database.type})")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"ERROR: Failed to initialize database: {e}", file=sys.stderr)
        return 1

    interrupt_event = threading.Event()
    install_signal_handlers(interrupt_event)

    try:
        reason = collector.run(
            kpis, cfg, db=db, reporter=out, interrupt_event=interrupt_event
        )
    except config_module.ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()

    logger.info(f"Collection finished: {reason}")
    out.print_message("All queries completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
