import logging
import sys
from typing import Union

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

NOISY_LOGGERS = [
    "aiohttp",
    "aiohttp.access",
    "asyncio",
    "urllib3",
    "web3",
    "web3.providers",
    "web3.RequestManager",
]


def parse_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level}")
    return value


def setup_logging(level: Union[str, int] = logging.INFO) -> None:
    """Configure the root logger once at startup."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root = logging.getLogger()
    root.setLevel(parse_level(level))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
