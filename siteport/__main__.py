"""
Module entrypoint for the siteport CLI.

This file exists so that `python -m siteport ...` works when the console-script
wrapper is not installed.
"""

from __future__ import annotations

from siteport.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
