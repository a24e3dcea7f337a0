import logging
import os
from logging.config import dictConfig

from dm_gateway.config import Settings

LOG_FORMAT = '%(asctime)s %(name)-12s %(levelname)-8s %(message)s'


def configure_logging(settings: Settings):
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    handlers = ['h']

    LOGGING_CONFIG = dict(
        version=1,
        disable_existing_loggers=False,
        formatters={
            'f': {'format': LOG_FORMAT},
        },
        handlers={
            'h': {
                'class': 'logging.StreamHandler',
                'formatter': 'f',
                'level': log_level,
            },
        },
        root={
            'handlers': handlers,
            'level': log_level,
        },
    )

    if settings.LOG_FILE:
        log_dir = os.path.dirname(settings.LOG_FILE)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        LOGGING_CONFIG['handlers']['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': settings.LOG_FILE,
            'formatter': 'f',
            'level': log_level,
            'maxBytes': 1024 * 1024 * 5,  # 5 MB
            'backupCount': 10,
        }
        handlers.append('file')

    dictConfig(LOGGING_CONFIG)
