"""CLI entrypoint for running gappsbot as a module."""

from gappsbot.cli import cli

if __name__ == "__main__":
    cli()
