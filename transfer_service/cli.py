"""
Command-line interface for the transfer service.
"""
import argparse
import json
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .coverage import CoverageTracker
from .datalink import DataLinkClient
from .errors import ConfigurationError, TransferServiceError
from .mseed import MiniSeedReader
from .scanner import FileScanner
from .selection import SelectionFilter
from .session import SessionConfig, TransferSession
from .tracker import StateTracker

logger = logging.getLogger(__name__)

# Values used when neither the command line nor the config file sets an option
DEFAULTS: Dict[str, Any] = {
    "state_file": None,
    "recursion_limit": -1,
    "selection_file": None,
    "max_rate": None,
    "quit_on_error": False,
    "pretend": False,
    "iostats": False,
    "iostats_interval": 30.0,
    "sync": True,
    "sync_dir": ".",
    "ack": True,
    "reconnect_delay": 60.0,
    "timeout": 60.0,
}


def setup_logging(verbose: int = 0, quiet: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: Number of times the verbose flag was given
        quiet: Only report warnings and errors
    """
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def load_config(config_file: Optional[Path] = None) -> dict:
    """Load configuration defaults from a JSON file.

    Args:
        config_file: Path to config file

    Returns:
        Dictionary of configuration values

    Raises:
        ConfigurationError: If the file cannot be read or holds unknown keys
    """
    if not config_file:
        return {}

    try:
        with open(config_file) as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Error loading config file {config_file}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file {config_file} must contain a JSON object")

    unknown = sorted(set(config) - set(DEFAULTS))
    if unknown:
        raise ConfigurationError(f"Unknown config keys in {config_file}: {', '.join(unknown)}")
    return config


def resolve_settings(args: argparse.Namespace, config: dict) -> Dict[str, Any]:
    """Merge command line values over config file values over defaults."""
    settings = dict(DEFAULTS)
    settings.update(config)
    for key in DEFAULTS:
        value = getattr(args, key, None)
        if value is not None:
            settings[key] = value
    return settings


class InputAction(argparse.Action):
    """Collect input paths and ``-l`` list files into one list in command-line order.

    List files given with ``-l`` are stored with an ``@`` prefix, like
    ``@listfile`` positionals.
    """

    def __call__(self, parser, namespace, values, option_string=None):
        items = list(getattr(namespace, self.dest, None) or [])
        if option_string:
            items.append(f"@{values}")
        else:
            items.extend(values)
        setattr(namespace, self.dest, items)


def split_inputs(inputs: List[str]) -> tuple:
    """Separate ``@listfile`` arguments from plain input paths, keeping their order."""
    roots = []
    lists = []
    for item in inputs:
        if item.startswith("@"):
            lists.append(item[1:])
        else:
            roots.append(item)
    return roots, lists


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="transfer-service",
        description="Send Mini-SEED records from files to a DataLink server, "
                    "resuming where previous runs left off."
    )
    parser.add_argument('address', type=str,
                        help="Server address as [host][:port]")
    parser.add_argument('inputs', nargs='*', default=[], action=InputAction,
                        help="Input files, directories or @listfiles")
    parser.add_argument('-V', '--version', action='version',
                        version=f"%(prog)s {__version__}")
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help="Be more verbose, may be repeated")
    parser.add_argument('-q', '--quiet', action='store_true',
                        help="Only report warnings and errors")
    parser.add_argument('-c', '--config', type=Path,
                        help="Path to JSON config file providing defaults")
    parser.add_argument('-S', '--state-file', dest='state_file', type=Path,
                        help="State file to save/restore transfer progress")
    parser.add_argument('-l', '--list-file', dest='inputs', action=InputAction,
                        help="File containing a list of inputs, may be repeated")
    parser.add_argument('-r', '--recursion-limit', dest='recursion_limit', type=int,
                        help="Maximum directory levels to recurse, negative for no limit")
    parser.add_argument('-s', '--selection-file', dest='selection_file', type=Path,
                        help="Only send records matching the selections in this file")
    parser.add_argument('-m', '--max-rate', dest='max_rate', type=float,
                        help="Maximum average send rate in bits per second")
    parser.add_argument('-E', '--quit-on-error', dest='quit_on_error',
                        action='store_const', const=True,
                        help="Quit on connection errors instead of reconnecting")
    parser.add_argument('-p', '--pretend', action='store_const', const=True,
                        help="Read and count records without sending or saving state")
    parser.add_argument('-I', '--iostats', action='store_const', const=True,
                        help="Report transfer rates while sending")
    parser.add_argument('--iostats-interval', dest='iostats_interval', type=float,
                        help="Seconds between transfer rate reports")
    parser.add_argument('--no-sync', dest='sync', action='store_const', const=False,
                        help="Do not write a SYNC file after sending data")
    parser.add_argument('--sync-dir', dest='sync_dir', type=Path,
                        help="Directory to write the SYNC file into")
    parser.add_argument('--no-ack', dest='ack', action='store_const', const=False,
                        help="Do not request acknowledgements for records")
    parser.add_argument('--reconnect-delay', dest='reconnect_delay', type=float,
                        help="Seconds to wait before reconnecting")
    parser.add_argument('--timeout', type=float,
                        help="Network timeout in seconds")
    return parser


def create_session(args: argparse.Namespace, settings: Dict[str, Any]) -> TransferSession:
    """Build the inventory, restore state and create the transfer session.

    Args:
        args: Command line arguments
        settings: Resolved settings

    Returns:
        Configured TransferSession instance

    Raises:
        TransferServiceError: On any configuration, inventory or state error
    """
    if not settings["state_file"]:
        raise ConfigurationError("No state file was specified, the -S argument is required")

    roots, list_files = split_inputs(args.inputs)
    if not roots and not list_files:
        raise ConfigurationError("No input files or directories were specified")

    inventory = FileScanner(settings["recursion_limit"]).build_inventory(roots, list_files)
    if not len(inventory):
        raise ConfigurationError("No input files were found")

    tracker = StateTracker(Path(settings["state_file"]))
    if tracker.restore(inventory):
        logger.info("Transfer state recovered")

    selection = None
    if settings["selection_file"]:
        selection = SelectionFilter.from_file(Path(settings["selection_file"]))

    try:
        transport = DataLinkClient(args.address, timeout=settings["timeout"])
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    config = SessionConfig(
        reconnect_delay=settings["reconnect_delay"],
        quit_on_error=settings["quit_on_error"],
        max_rate=settings["max_rate"],
        require_ack=settings["ack"],
        pretend=settings["pretend"],
        iostats_interval=settings["iostats_interval"] if settings["iostats"] else None,
    )

    return TransferSession(
        inventory,
        MiniSeedReader(),
        transport,
        tracker=tracker,
        config=config,
        selection=selection,
        coverage=CoverageTracker() if settings["sync"] else None,
    )


def install_signal_handlers(session: TransferSession) -> None:
    """Route termination and status signals to the session's flags."""
    signal.signal(signal.SIGINT, lambda s, f: session.request_stop())
    signal.signal(signal.SIGTERM, lambda s, f: session.request_stop())
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, lambda s, f: session.request_status())
    for name in ("SIGHUP", "SIGPIPE"):
        if hasattr(signal, name):
            signal.signal(getattr(signal, name), signal.SIG_IGN)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    logger.info(f"transfer-service version {__version__}")

    try:
        settings = resolve_settings(args, load_config(args.config))
        session = create_session(args, settings)
    except TransferServiceError as e:
        logger.error(f"Error: {e}")
        return 1

    install_signal_handlers(session)

    run_start = datetime.now()
    summary = session.run()
    run_end = datetime.now()

    if session.coverage is not None and not settings["pretend"]:
        session.coverage.write_sync(Path(settings["sync_dir"]), run_start, run_end)

    # Printed rather than logged so it shows even with --quiet
    if summary.all_sent:
        print("All data transmitted.")

    return summary.exit_code


if __name__ == '__main__':
    sys.exit(main())
