"""openkit command-line entry point."""

from __future__ import annotations

from openkit.cli import app

if __name__ == "__main__":
    app()
