"""
Django settings for the buggy shuttle dispatch backend.
"""
from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.staticfiles",
    "shuttle",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "buggyshuttle.urls"
WSGI_APPLICATION = "buggyshuttle.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("SHUTTLE_DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("SHUTTLE_TIME_ZONE", "Europe/Istanbul")
USE_I18N = False
USE_TZ = True

STATIC_URL = "static/"

# Correction and tracking tolerances, all distances in meters.
SHUTTLE_CONFIG = {
    "stop_snap_radius": float(os.environ.get("SHUTTLE_STOP_SNAP_RADIUS", 15)),
    "route_max_distance": float(os.environ.get("SHUTTLE_ROUTE_MAX_DISTANCE", 40)),
    "route_run_break": 200.0,
    "geofence_debounce_seconds": 60,
    "correct_positions": os.environ.get("SHUTTLE_CORRECT_POSITIONS", "1") == "1",
    "feed_poll_interval": float(os.environ.get("SHUTTLE_FEED_POLL_INTERVAL", 5)),
    "feed_reconnect_delay": float(os.environ.get("SHUTTLE_FEED_RECONNECT_DELAY", 5)),
}

TRACKING_SERVER = {
    "url": os.environ.get("TRACCAR_URL", "http://localhost:8082"),
    "user": os.environ.get("TRACCAR_USER", "admin"),
    "password": os.environ.get("TRACCAR_PASSWORD", "admin"),
    "timeout": float(os.environ.get("TRACCAR_TIMEOUT", 10)),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "shuttle": {
            "handlers": ["console"],
            "level": os.environ.get("SHUTTLE_LOG_LEVEL", "INFO"),
        },
    },
}
