"""ccrelay CLI entry point."""

from __future__ import annotations

from ccrelay.cli import app

if __name__ == "__main__":
    app()
