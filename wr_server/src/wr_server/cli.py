"""Command-line entry points for wr_server."""

from __future__ import annotations

import sys
from typing import List, Optional

from uvicorn.main import main as uvicorn_main

DEFAULT_APP = "wr_server.app.main:app"


def build_argv(argv: List[str]) -> List[str]:
    """Insert the reconciler app path unless an app was given explicitly.

    uvicorn takes exactly one positional argument (the app import string),
    and every option it accepts starts with ``-``.
    """
    has_app = any(":" in arg and not arg.startswith("-") for arg in argv)
    return list(argv) if has_app else [DEFAULT_APP, *argv]


def main(argv: Optional[List[str]] = None) -> None:
    """Run the reconciler service through uvicorn's CLI.

    Example::

        wr-server --host 0.0.0.0 --port 8081 --log-level info
    """
    args = build_argv(sys.argv[1:] if argv is None else argv)
    sys.exit(uvicorn_main(args=args, standalone_mode=True))
