"""Entry point for ``python -m ccchat``."""

from ccchat.cli import main

if __name__ == "__main__":
    main()
