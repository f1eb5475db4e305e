"""Entry point for the apisync agent.

Run with: python -m apisync --help
"""

from __future__ import annotations

from apisync.cli import app


def main() -> None:
    """Run the CLI."""
    app()


if __name__ == "__main__":
    main()
