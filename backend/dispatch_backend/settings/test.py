from .base import *

DEBUG = False
SECRET_KEY = "test-secret-key"

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

DISPATCH_RUNNER = "celery"

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

RIDE_DISPATCH = {
    **RIDE_DISPATCH,
    "OFFER_TIMEOUT_SECONDS": 0.05,
    "GEO_RETRY_BACKOFF_SECONDS": 0,
    "NOTIFY_TIMEOUT_SECONDS": 1,
    "GEO_INDEX_BACKEND": "database",
    "PRICING_FUNCTION": None,
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {"null": {"class": "logging.NullHandler"}},
    "root": {"handlers": ["null"], "level": "CRITICAL"},
}
