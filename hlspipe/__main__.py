"""CLI entry point for python -m hlspipe"""
from hlspipe.cli.commands import app

if __name__ == "__main__":
    app()
