"""Entry point for `python -m accounts_cli` and the `accounts` console script."""

from __future__ import annotations

from accounts_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
