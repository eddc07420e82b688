import logging


FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("treeguard")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not any(getattr(h, "_treeguard", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(FORMAT))
        handler._treeguard = True
        logger.addHandler(handler)
    return logger
