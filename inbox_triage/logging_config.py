import logging
from pathlib import Path
from typing import Union


def setup_logging(level: Union[int, str] = logging.INFO, log_to_file: bool = False) -> None:
    """Configure root logging for the application."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    log_format = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
    handlers = [logging.StreamHandler()]

    if log_to_file:
        logs_dir = Path("logs")
        logs_dir.mkdir(exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / "inbox_triage.log")
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=handlers,
        force=True,
    )

    # The discovery client logs a warning on every build without a file cache.
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
