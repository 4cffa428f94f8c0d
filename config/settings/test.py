"""
Settings for the pytest suite: in-memory mail, inline Celery, fixed hosts.
"""

from .base import *  # noqa: F403
from .base import DATABASES
from .base import REST_FRAMEWORK
from .base import env

SECRET_KEY = env(
    "DJANGO_SECRET_KEY",
    default="Uq3pN1xgJ0b7tWmYkE5sRz8vLc2HfA9dQo4iTn6yBe0PjKwXaMlVhGuSrCxZ",
)
ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]
DATABASES["default"]["CONN_MAX_AGE"] = 0

# Fast hashing for the admin_client user.
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

# Billing notices land in mailoutbox.
EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True

# Square signs the public webhook URL, so it has to be stable in tests.
SITE_URL = "http://testserver"
WEBHOOK_BASE_URL = "https://hooks.example.com"

REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

# caplog only sees records that reach the root logger.
LOGGING["loggers"]["memberdesk"]["propagate"] = True  # noqa: F405
