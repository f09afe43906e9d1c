"""
Django settings for the Event Credentials pipeline.
"""

from pathlib import Path

from decouple import config

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config("DJANGO_SECRET_KEY", default="change-me")
DEBUG = config("DJANGO_DEBUG", cast=bool, default=False)
APP_BASE_URL = config("APP_BASE_URL", default="http://localhost:8000")


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


ALLOWED_HOSTS = split_csv(config("DJANGO_ALLOWED_HOSTS", default="localhost,127.0.0.1,[::1]"))


INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "simple_history",
    "accreditations",
    "credentials",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "simple_history.middleware.HistoryRequestMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "config.wsgi.application"

DB_ENGINE = config("DJANGO_DB_ENGINE", default="sqlite")
if DB_ENGINE == "postgresql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": config("POSTGRES_DB", default="event_credentials"),
            "USER": config("POSTGRES_USER", default="credentials_user"),
            "PASSWORD": config("POSTGRES_PASSWORD", default="credentials_password"),
            "HOST": config("POSTGRES_HOST", default="db"),
            "PORT": config("POSTGRES_PORT", default=5432, cast=int),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": config("SQLITE_PATH", default=str(BASE_DIR / "db.sqlite3")),
        }
    }

LANGUAGE_CODE = "en"
TIME_ZONE = config("DJANGO_TIME_ZONE", default="UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
MEDIA_URL = config("MEDIA_URL", default="/media/")
MEDIA_ROOT = Path(config("MEDIA_ROOT", default=str(BASE_DIR / "media")))
CREDENTIALS_STORAGE_ROOT = Path(
    config("CREDENTIALS_STORAGE_ROOT", default=str(MEDIA_ROOT / "public"))
)
STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "credentials": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
        "OPTIONS": {
            "location": str(CREDENTIALS_STORAGE_ROOT),
            "base_url": f"{MEDIA_URL}public/",
        },
    },
    "staticfiles": {
        "BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage",
    },
}
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOG_LEVEL = config("DJANGO_LOG_LEVEL", default="INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
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
        "django": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "credentials": {
            "handlers": ["console"],
            "level": config("CREDENTIALS_LOG_LEVEL", default=LOG_LEVEL),
            "propagate": False,
        },
        "celery": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}

CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://redis:6379/0")
CELERY_RESULT_BACKEND = config("CELERY_RESULT_BACKEND", default="redis://redis:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
# A worker killed mid-task (timeout, OOM) must hand the message back to the broker.
CELERY_TASK_ACKS_LATE = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_DEFAULT_QUEUE = "default"
CELERY_TASK_ROUTES = {
    "credentials.tasks.generate_credential": {"queue": "credentials"},
    "credentials.tasks.regenerate_event_credentials": {"queue": "credentials"},
    "credentials.tasks.regenerate_single_credential": {"queue": "credentials"},
    "credentials.tasks.expire_event_credentials": {"queue": "credentials"},
    "credentials.tasks.generate_print_batch": {"queue": "print_batches"},
}
CELERY_BEAT_SCHEDULE = {
    "cleanup-old-print-batches-daily": {
        "task": "credentials.tasks.cleanup_old_print_batches",
        "schedule": 60 * 60 * 24,
    },
}

CREDENTIALS_RETRY_MAX_ATTEMPTS = config("CREDENTIALS_RETRY_MAX_ATTEMPTS", cast=int, default=3)
CREDENTIALS_RETRY_DELAY_SECONDS = config("CREDENTIALS_RETRY_DELAY_SECONDS", cast=int, default=30)
CREDENTIALS_RETRY_DEADLINE_SECONDS = config(
    "CREDENTIALS_RETRY_DEADLINE_SECONDS", cast=int, default=600
)
CREDENTIALS_VERIFICATION_URL = config(
    "CREDENTIALS_VERIFICATION_URL",
    default=f"{APP_BASE_URL.rstrip('/')}/verify-qr",
)
CREDENTIALS_FONT_PATH = config("CREDENTIALS_FONT_PATH", default="")
PRINT_BATCH_CHUNK_SIZE = config("PRINT_BATCH_CHUNK_SIZE", cast=int, default=100)
PRINT_BATCH_JPEG_QUALITY = config("PRINT_BATCH_JPEG_QUALITY", cast=int, default=90)
PRINT_BATCH_CLEANUP_DAYS = config("PRINT_BATCH_CLEANUP_DAYS", cast=int, default=90)
