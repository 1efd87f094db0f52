"""Command line entry point running the EMS decision loop."""

import argparse
import logging
import signal
import threading
from typing import List, Optional

from .config import EMSConfig
from .core import EnergyManagementSystem
from .exceptions import EMSError
from .simulation import SiteSimulator

logger = logging.getLogger("ems.cli")

# Signals that trigger a graceful shutdown
SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ems",
        description="Keep a PV and battery site inside its grid draw limit",
    )
    parser.add_argument(
        "configfile",
        help="Path to the site configuration (.yaml, .yml or .json)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed of the simulated site (default: simulation.seed from the configuration)",
    )
    return parser


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Stop the decision loop after its current tick on SIGINT, SIGTERM or SIGHUP."""

    def signal_handler(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping EMS")
        stop_event.set()

    for name in SHUTDOWN_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is not None:
            signal.signal(sig, signal_handler)


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
    """
    args = build_parser().parse_args(argv)

    try:
        config = EMSConfig.load_from_file(args.configfile)
        config.check()
    except EMSError as e:
        logger.error(f"failed to read config: {e}")
        return 1

    try:
        config.setup_logging()
    except EMSError as e:
        logger.error(f"failed to set up logging: {e}")
        return 1

    try:
        ems = EnergyManagementSystem.from_config(config)
    except EMSError as e:
        logger.error(f"failed to build ems: {e}")
        return 1

    seed = args.seed if args.seed is not None else config.simulation.seed
    simulator = SiteSimulator(ems, seed=seed, load_fraction=config.simulation.load_fraction)

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    logger.info("ems up")
    ems.serve(stop_event, pre_cycle=simulator.step)
    logger.info("successfully closed ems")
    return 0
