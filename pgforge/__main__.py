# File: pgforge/__main__.py
"""
pgforge - Module entry point.

Allows running the generator directly via::

    python -m pgforge -c pgforge.yaml

This module simply delegates to the CLI entry point defined in ``pgforge.cli``.
"""

from __future__ import annotations


def main() -> None:
    """Delegate to the CLI main function."""
    from pgforge.cli import cli_main
    cli_main()


if __name__ == "__main__":
    main()
