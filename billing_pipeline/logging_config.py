import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once per process (gateway or worker)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # pika logs every frame at DEBUG and every reconnect at WARNING
    logging.getLogger("pika").setLevel(logging.WARNING)
