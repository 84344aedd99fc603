"""Run the relay with uvicorn: ``python -m coderelay``."""

from __future__ import annotations

import uvicorn

from coderelay.core.config import config
from coderelay.core.logging import setup_logging
from coderelay.main import create_app


def main() -> None:
    setup_logging()
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port, log_config=None)


if __name__ == "__main__":
    main()
