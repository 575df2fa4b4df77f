"""Entry point for running the application with uvicorn."""

import uvicorn

from payrun_engine.config import get_settings
from payrun_engine.log import configure_logging


def main() -> None:
    """Run the application."""
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "payrun_engine.api.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
