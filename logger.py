# logger.py - Centralized logging configuration
import logging
import os
from logging.handlers import RotatingFileHandler


LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"


def setup_logger(name, log_file=None, level=logging.INFO):
    """Named logger writing to logs/<name>.log, plus the console outside production."""
    os.makedirs(LOG_DIR, exist_ok=True)
    log_file = log_file or os.path.join(LOG_DIR, f"{name}.log")

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    file_handler = RotatingFileHandler(log_file, maxBytes=1024 * 1024, backupCount=10)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    if os.environ.get("FLASK_ENV") != "production":
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(console_handler)

    return logger


def configure_app_logging(app):
    """
    Route ``app.logger`` through the shared "app" handlers and let the domain
    loggers (``logging.getLogger(__name__)`` in blueprints/ and bonus/) reach
    them too.
    """
    level = logging.DEBUG if app.debug else logging.INFO
    app.logger.handlers.clear()
    for handler in app_logger.handlers:
        app.logger.addHandler(handler)
    app.logger.setLevel(level)
    app.logger.propagate = False

    for name in ("blueprints", "bonus"):
        domain_logger = logging.getLogger(name)
        domain_logger.setLevel(level)
        for handler in app_logger.handlers:
            if handler not in domain_logger.handlers:
                domain_logger.addHandler(handler)


# Global loggers
app_logger = setup_logger("app")
payments_logger = setup_logger("payments")
