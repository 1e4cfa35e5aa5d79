"""Entry point for running the application with uvicorn."""

import uvicorn

from bnpl_engine.config import get_settings
from bnpl_engine.logging_config import configure_logging


def main() -> None:
    """Run the application."""
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "bnpl_engine.api.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    main()
