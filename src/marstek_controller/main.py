"""Command line entry point for the Marstek Controller service."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

import dotenv


def parse_cli(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the controller process."""
    parser = argparse.ArgumentParser(description="Marstek Controller")
    _ = parser.add_argument(
        "--config",
        help="Path to the YAML device file (defaults to $MARSTEK_CONFIG_FILE)",
        default=None,
        type=Path,
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument(
        "--discover",
        nargs="?",
        const="",
        default=None,
        metavar="ADDRESS",
        help="Discover batteries (broadcast, or only ADDRESS), save them to the device file and exit",
    )
    return parser.parse_args(argv)


def load_env_file(path: Path) -> bool | None:
    """Load ``path`` into ``os.environ``.

    Returns:
        True when variables were loaded, False when the file held none,
        None when the file does not exist

    """
    env_path = path.expanduser().resolve()
    if not env_path.exists():
        return None
    return dotenv.load_dotenv(env_path, override=True)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the Marstek Controller entry point."""
    args = parse_cli(argv)
    env_loaded = load_env_file(args.env) if args.env else None
    # const reads the environment at import time
    from marstek_controller.controller import run  # noqa: PLC0415

    return run(args, env_loaded)


if __name__ == "__main__":
    sys.exit(main())
