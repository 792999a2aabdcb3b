"""Main CLI entry point for scriptorium."""

import argparse
import sys
from pathlib import Path

from ..config import load_settings
from ..errors import ConfigError
from ..logger import setup_logging
from .commands.batch import setup_batch_commands
from .commands.library import setup_library_commands
from .commands.process import setup_process_commands
from .commands.serve import setup_serve_commands


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="scriptorium", description="Manuscript library processing - batch OCR, translation and summaries"
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to settings JSON (default: data/scriptorium.json)")
    parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    setup_library_commands(subparsers)
    setup_batch_commands(subparsers)
    setup_process_commands(subparsers)
    setup_serve_commands(subparsers)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        args.settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1
    setup_logging(args.log_level or args.settings.log_level)

    # Execute command
    if hasattr(args, "func"):
        return args.func(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
