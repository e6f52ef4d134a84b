"""
Entry point for running swarmforge as a module.

Usage:
    python -m swarmforge start ENG-101 ENG-102
    python -m swarmforge worker complete --summary "Done"

This is equivalent to the ``swarm`` console script.
"""

import sys

from swarmforge.cli.swarm_cli import main


if __name__ == "__main__":
    sys.exit(main())
