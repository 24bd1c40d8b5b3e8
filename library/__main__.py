#!/usr/bin/env python3
"""
Entry point for the library CLI.

Run with: python -m library
"""

from .cli import cli

if __name__ == '__main__':
    cli()
