"""
Entry point for running relsync as a module.

Usage:
    python -m relsync --help
    python -m relsync sync 1 --user alice --now
    python -m relsync worker
"""

from relsync.cli import cli

if __name__ == "__main__":
    cli()
