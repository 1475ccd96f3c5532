import logging

from django.apps import AppConfig
from django.db import DatabaseError

logger = logging.getLogger(__name__)


class ClassifierConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'classifier'

    def ready(self):
        """Schedule cleanup of training runs interrupted by a process restart."""
        from django.db.models.signals import post_migrate
        post_migrate.connect(_cleanup_stale_runs, sender=self)


def _cleanup_stale_runs(sender, **kwargs):
    """Mark any in-progress training runs as failed after a restart."""
    from classifier.models import TrainingRun

    stale_statuses = ['pending', 'running', 'training', 'evaluating']
    try:
        count = TrainingRun.objects.filter(status__in=stale_statuses).update(
            status='failed',
            error_message='Process was shut down while training was in progress.',
        )
    except DatabaseError:
        logger.exception("Could not clean up stale training runs")
        return
    if count:
        logger.warning(
            "Marked %d stale training run(s) as failed (restart cleanup).",
            count,
        )
