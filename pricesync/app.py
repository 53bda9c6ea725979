"""Console entry point for the ``pricesync`` command (backfill, init-db, show-run)."""

from .cli import app


def main():
    """Run the pricesync CLI."""
    app(prog_name="pricesync")


if __name__ == "__main__":
    main()
