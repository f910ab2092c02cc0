import sys
from pathlib import Path

from loguru import logger


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"


def configure_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    rotation_mb: int = 10,
    retention: int = 5,
) -> None:
    """Console sink always; a rotating file sink when ``log_file`` is set."""
    logger.remove()
    logger.add(sys.stdout, level=level.upper(), format=LOG_FORMAT, enqueue=True)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level.upper(),
            format=LOG_FORMAT,
            rotation=f"{rotation_mb} MB",
            retention=retention,
            enqueue=True,
        )
