"""Pointflow API Server - Entry Point"""

from .config import get_settings
from .logging_config import configure_logging, get_logger

# Configure logging at module load (before any other imports that might log)
configure_logging(get_settings().log_level)
logger = get_logger(__name__)


def run_http():
    """Run the REST API under uvicorn."""
    import uvicorn

    settings = get_settings()
    logger.info("Starting Pointflow API on %s:%d", settings.host, settings.port)
    uvicorn.run(
        "pointflow.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


def main():
    run_http()


if __name__ == "__main__":
    main()
