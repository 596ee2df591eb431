"""Allow running the CLI via ``python -m workplan``."""

from workplan.cli import main

if __name__ == "__main__":
    main()
