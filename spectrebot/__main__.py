"""Entry point: ``python -m spectrebot``"""

import uvicorn

from spectrebot.app import create_app
from spectrebot.core.config import get_settings
from spectrebot.core.logging import setup_logging


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(create_app(), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
