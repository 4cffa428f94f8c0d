"""
Development settings: debug on, mail to the console, verbose billing logs.
"""

from .base import *  # noqa: F403
from .base import env

DEBUG = True
SECRET_KEY = env(
    "DJANGO_SECRET_KEY",
    default="b0QeJ4kXvS8mR2pT6yW1nH9cL3fZ7aGdU5oIjEqVxNsMtBrKwCyPhDl",
)
ALLOWED_HOSTS = ["localhost", "0.0.0.0", "127.0.0.1"]  # noqa: S104

# Billing emails are printed instead of sent.
EMAIL_BACKEND = "django.core.mail.backends.console.EmailBackend"

# Run Celery tasks inline unless a broker is configured for local work.
CELERY_TASK_ALWAYS_EAGER = env.bool("CELERY_TASK_ALWAYS_EAGER", default=True)

# Tunnel URL (ngrok and friends) registered with the processors' sandboxes.
WEBHOOK_BASE_URL = env("WEBHOOK_BASE_URL", default="http://localhost:8000")

LOGGING["loggers"]["memberdesk"]["level"] = "DEBUG"  # noqa: F405
