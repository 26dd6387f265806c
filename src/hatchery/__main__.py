"""Main entry point for `python -m hatchery`."""

from hatchery.cli.main import main


if __name__ == "__main__":
    main()
