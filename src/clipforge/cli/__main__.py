"""CLI entry point for clipforge.cli module.

Enables execution via: python -m clipforge.cli (runs a worker pool)
"""

from clipforge.cli.run_worker import main

if __name__ == "__main__":
    main()
