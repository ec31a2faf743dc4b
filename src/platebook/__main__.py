"""
Entry point for running Platebook as a module.

Usage:
    python -m platebook [command] [options]
"""

from platebook.cli import main

if __name__ == "__main__":
    main()
