import logging


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Logger factory for the shared pkg clients (db, cache, tokens)."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
