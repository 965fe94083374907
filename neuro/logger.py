import logging
import os


def get_logger(name: str = "neuro") -> logging.Logger:
    """
    Return a logger in the ``neuro`` hierarchy.

    A stream handler is attached to the root ``neuro`` logger the first time
    it is requested. The level is read from the ``NEURO_LOG_LEVEL``
    environment variable (default ``WARNING``).
    """
    root = logging.getLogger("neuro")
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("[%(asctime)s][%(levelname)s][%(name)s] %(message)s")
        handler.setFormatter(formatter)
        root.addHandler(handler)
        level_name = os.getenv("NEURO_LOG_LEVEL", "WARNING").upper()
        root.setLevel(getattr(logging, level_name, logging.WARNING))

    if name == "neuro" or name.startswith("neuro."):
        return logging.getLogger(name)
    return logging.getLogger(f"neuro.{name}")
