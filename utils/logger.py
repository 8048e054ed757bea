# utils/logger.py
import os
import sys
from datetime import datetime
from pathlib import Path

from loguru import logger

log_dir = Path(os.getenv("IG_LOG_DIR", Path.cwd() / "logs"))
log_level = os.getenv("IG_LOG_LEVEL", "INFO").upper()

start_time = datetime.now().strftime("%Y%m%d_%H%M%S")
log_file = log_dir / f"run_{start_time}.log"

logger.remove()

logger.add(
    sys.stdout,
    level=log_level,
    enqueue=True,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | {level} | {message}",
)

if os.getenv("IG_LOG_FILE", "1") != "0":
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_file,
        level="DEBUG",
        rotation="100 MB",
        retention="90 days",
        enqueue=True,
        encoding="utf-8",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )
    logger.debug(f"Logger initialized. Writing logs to {log_file}")
