"""CLI entry point for python -m comicpipe"""
from comicpipe.cli.commands import app

if __name__ == "__main__":
    app()
