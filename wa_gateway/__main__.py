"""Entry point for ``python -m wa_gateway``."""

from wa_gateway.cli.commands import app

if __name__ == "__main__":
    app()
