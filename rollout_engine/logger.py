import logging

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ROOT_LOGGER = "rollout_engine"


def setup_logging(level="INFO", stream=None):
    """Configure root handlers and the engine's log level; level is a name from LOG_LEVELS"""
    name = str(level).upper()
    if name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level {level!r}, expected one of {', '.join(LOG_LEVELS)}")
    logging.basicConfig(level=name, format=LOG_FORMAT, stream=stream)
    logging.getLogger(ROOT_LOGGER).setLevel(name)


def get_logger(name=ROOT_LOGGER):
    return logging.getLogger(name if name == ROOT_LOGGER else f"{ROOT_LOGGER}.{name}")
