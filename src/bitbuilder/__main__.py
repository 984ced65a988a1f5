"""Bit Builder command line entry."""

from __future__ import annotations

from bitbuilder.cli import app

if __name__ == "__main__":
    app()
