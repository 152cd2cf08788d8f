"""Entry point for `python -m cardboard_cli` and the `cardboard` console script."""

from __future__ import annotations

from cardboard_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
