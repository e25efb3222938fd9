"""
Logging setup for the ledger API.

``setup_logging`` attaches a console handler (and optionally a file
handler) to the root logger once per process.  The HTTP client
libraries used for token introspection log every request at INFO; they
are pinned to WARNING so a busy day of order entry does not drown the
log in tokeninfo lines.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3")


def setup_logging(
    level: str = "INFO",
    logfile: Optional[str] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """Configure the root logger.

    Parameters
    ----------
    level : str
        Logging level name, case insensitive.  Unknown names fall back
        to ``INFO``.
    logfile : Optional[str]
        Extra file to log to.  Relative paths resolve against the
        current working directory.
    quiet : Iterable[str]
        Logger names raised to WARNING regardless of ``level``.
    """
    root = logging.getLogger()
    if root.handlers:
        # uvicorn or an earlier create_app() already did this
        return

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if logfile:
        handlers.append(logging.FileHandler(Path(logfile).resolve(), encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
