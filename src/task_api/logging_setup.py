from __future__ import annotations

import logging
import sys


# PUBLIC_INTERFACE
def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger with a single stderr handler.

    Existing root handlers are replaced, so calling this again (for example when
    a second app instance starts in the same process) does not duplicate output.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
