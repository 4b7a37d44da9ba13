"""Entry point for ``python -m termbridge``."""

from termbridge.cli import main

if __name__ == "__main__":
    main()
