# =============================================================================
# Payments Core Project Configuration Package
# =============================================================================
# Settings, URLs, ASGI/WSGI entry points and the Celery application.
#
# Importing the Celery app here makes @shared_task bind to it when Django
# starts, so post-commit notifications and periodic jobs are discovered.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
