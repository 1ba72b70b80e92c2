"""
Package entry point.

Allows running the application via:

    python -m roomschedule

This simply forwards execution to roomschedule.cli.main().
"""

from roomschedule.cli import main

if __name__ == "__main__":
    main()
