from __future__ import annotations

import logging
import sys


class _ConsoleNoiseFilter(logging.Filter):
    """Keep fast_staged records; let other libraries through only at ERROR+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "fast_staged" or record.name.startswith("fast_staged."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(*, verbose: bool = False, console_level: int | None = None) -> None:
    """
    Configure a single stderr handler.

    The progress display owns stdout, so the console default is WARNING;
    ``verbose`` lowers it to DEBUG. Call once, before the first log call.
    """
    if console_level is None:
        console_level = logging.DEBUG if verbose else logging.WARNING

    root = logging.getLogger()
    root.setLevel(console_level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(console_level)
    handler.setFormatter(fmt)
    handler.addFilter(_ConsoleNoiseFilter())
    root.addHandler(handler)

    logging.captureWarnings(True)
