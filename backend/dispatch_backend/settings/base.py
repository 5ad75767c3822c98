"""
Django settings for dispatch_backend project.

Defaults for local development. prod.py and test.py build on this module.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-dev-only-change-me")
DEBUG = os.getenv("DEBUG", "True") == "True"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third party
    'rest_framework',
    'channels',

    # Local apps
    'drivers',
    'rides',
    'realtime',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'dispatch_backend.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'dispatch_backend.wsgi.application'
ASGI_APPLICATION = 'dispatch_backend.asgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv("SQLITE_PATH", str(BASE_DIR / 'db.sqlite3')),
    }
}

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ---------------------- REST framework ----------------------
# Identity is owned by external systems; endpoints take rider/driver IDs as input.

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': ['rest_framework.permissions.AllowAny'],
    'UNAUTHENTICATED_USER': None,
}

# ---------------------- Channels ----------------------

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Shared by the ASGI server, the dispatch worker and Celery, so it must be Redis
CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels_redis.core.RedisChannelLayer",
        "CONFIG": {
            "hosts": [os.getenv("CHANNEL_LAYER_URL", REDIS_URL)],
        },
    }
}

# ---------------------- Celery ----------------------

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'release-scheduled-rides': {
        'task': 'rides.tasks.release_scheduled_rides_task',
        'schedule': 60.0,
    },
}

# ---------------------- Ride dispatch ----------------------

REDIS_GEO_URL = os.getenv("REDIS_GEO_URL", REDIS_URL)

RIDE_DISPATCH = {
    "OFFER_TIMEOUT_SECONDS": int(os.getenv("OFFER_TIMEOUT_SECONDS", 60)),
    "INITIAL_RADIUS_METERS": 1000,
    "RADIUS_STEP_METERS": 1000,
    "MAX_RADIUS_METERS": 10000,
    "RADIUS_SCHEDULE_METERS": [],
    "GEO_RETRY_ATTEMPTS": 3,
    "GEO_RETRY_BACKOFF_SECONDS": 0.5,
    "NOTIFY_TIMEOUT_SECONDS": 5,
    "MAX_OFFERS": None,
    "LEASE_SECONDS": int(os.getenv("DISPATCH_LEASE_SECONDS", 180)),
    "GEO_INDEX_BACKEND": os.getenv("GEO_INDEX_BACKEND", "database"),
    "PRICING_FUNCTION": os.getenv("PRICING_FUNCTION") or None,
}

# Who runs driver searches: "worker" (manage.py runworker ride-dispatch) or "celery"
DISPATCH_RUNNER = os.getenv("DISPATCH_RUNNER", "worker")

# Scheduled rides start searching this long before pickup
SCHEDULED_RELEASE_LEAD_SECONDS = 15 * 60

# ---------------------- Logging ----------------------

DISPATCH_LOG_LEVEL = os.getenv("DISPATCH_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "services": {"handlers": ["console"], "level": DISPATCH_LOG_LEVEL, "propagate": False},
        "rides": {"handlers": ["console"], "level": DISPATCH_LOG_LEVEL, "propagate": False},
        "drivers": {"handlers": ["console"], "level": DISPATCH_LOG_LEVEL, "propagate": False},
        "realtime": {"handlers": ["console"], "level": DISPATCH_LOG_LEVEL, "propagate": False},
    },
}
