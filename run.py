"""Entry point for the ledger server.

Serves ``salon_ledger_api.app.main:app`` with Uvicorn.  Intended to be
executed from the project root, for example in a container where only
a single Python file is specified::

    python run.py

Host and port are read from ``HOST`` and ``PORT`` (defaults
``0.0.0.0`` and ``8000``); everything else is configured through the
environment variables documented in ``salon_ledger_api.app.core.config``.
"""
import logging
import os

from uvicorn import Config, Server

from salon_ledger_api.app.main import app


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    config = Config(app=app, host=host, port=port, reload=False, log_level="info")
    server = Server(config)
    logging.getLogger(__name__).info("Starting ledger API on %s:%s", host, port)
    server.run()


if __name__ == "__main__":
    try:
        main()
    except (KeyboardInterrupt, SystemExit):
        pass
