# chatsales/utils/logger.py
from loguru import logger
import sys

logger.remove()
logger.add(
    sys.stdout,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    level="INFO"
)

logger.add(
    "logs/chatsales_{time}.log",
    rotation="100 MB",
    retention="10 days",
    level="DEBUG",
    enqueue=True,
)
