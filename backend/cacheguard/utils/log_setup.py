"""
Logging setup for applications and the demo CLI.

Library modules only call logging.getLogger(__name__); handlers are
installed here by whatever process embeds cacheguard.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", rich_output: bool = False, console: Optional[Console] = None) -> None:
    """
    Configure root logging.

    Args:
        level: Standard level name
        rich_output: Render records with rich instead of plain text
        console: Console the rich handler writes to
    """
    if rich_output:
        handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
        logging.basicConfig(level=level.upper(), format="%(message)s", handlers=[handler], force=True)
    else:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)

    # valkey's connection chatter is only useful when debugging the transport
    logging.getLogger("valkey").setLevel(max(logging.getLevelName(level.upper()), logging.WARNING))
