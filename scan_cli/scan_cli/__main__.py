"""Entry point for `python -m scan_cli` and `gitscope` console script."""

from __future__ import annotations

from scan_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
