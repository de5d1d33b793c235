"""
Central logger configuration. Import get_logger() from other modules.
"""
import logging

from hospital_intake.code_utils.config import SETTINGS


def get_logger(name: str = "hospital_intake"):
    """Create and return a module-level logger."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(SETTINGS.log_format)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, SETTINGS.log_level.upper(), logging.INFO))
    return logger


# convenience
logger = get_logger()
