#!/usr/bin/env python3
"""
Entry point for running portbroker as a module.

This allows the package to be executed with:
    python -m portbroker
"""
from portbroker.cli import cli

if __name__ == "__main__":
    cli()
