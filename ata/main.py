"""ata entry point.

Startup order: arguments -> Settings -> logging -> Session -> InputLoop.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from ata.config import Settings, load_settings, resolve_config_path, write_example_config
from ata.conversation.errors import AtaError, ConfigError
from ata.help import SHORTCUTS, missing_config
from ata.render import TerminalRenderer
from ata.repl import InputLoop, stdin_is_interactive
from ata.session import Session

logger = logging.getLogger(__name__)


def _version() -> str:
    try:
        return version("ata")
    except PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ata",
        description="Ask the Terminal Anything: a streaming LLM chat client for your terminal.",
    )
    parser.add_argument(
        "-c", "--config", default="",
        help="Path to the configuration TOML file, or a config name in the user config dir.",
    )
    parser.add_argument(
        "--hide-config", action="store_true",
        help="Avoid printing the configuration on startup.",
    )
    parser.add_argument(
        "--print-shortcuts", action="store_true",
        help="Print the keyboard shortcuts and exit.",
    )
    parser.add_argument("-l", "--load", metavar="FILE", help="Conversation file to load.")
    parser.add_argument("--log-level", help="Override the configured log level.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {_version()}")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )


def _offer_example_config(path: Path) -> None:
    """Explain how to configure ata and optionally write an example file."""
    sys.stderr.write(missing_config(path))
    if not stdin_is_interactive() or path.exists():
        return
    answer = input(f"Do you want me to write this example file to {path} for you to edit? [y/N] ")
    if answer.strip().lower().startswith("y"):
        write_example_config(path)


async def run(settings: Settings, args: argparse.Namespace) -> int:
    renderer = TerminalRenderer()
    session = Session(settings, renderer=renderer)
    try:
        if args.load:
            count = session.load(Path(args.load).expanduser())
            logger.info("Loaded %d turns from %s", count, args.load)
        loop = InputLoop(session, renderer)
        if stdin_is_interactive():
            return await loop.run_interactive()
        return await loop.run_once(sys.stdin)
    finally:
        await session.close()


def main(argv: list[str] | None = None) -> int:
    """Entry point -- parse arguments, load settings, run the input loop."""
    args = build_parser().parse_args(argv)

    if args.print_shortcuts:
        print(SHORTCUTS)
        return 0

    config_path = resolve_config_path(args.config)
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        configure_logging("warning")
        logger.error("%s", e)
        return 1

    configure_logging(args.log_level or settings.log_level)
    logger.info("Model: %s", settings.model)

    try:
        settings.require_api_key()
    except ConfigError:
        _offer_example_config(config_path)
        return 1

    if not (args.hide_config or settings.ui.hide_config):
        sys.stderr.write(settings.describe() + "\n\n")

    try:
        return asyncio.run(run(settings, args))
    except AtaError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
