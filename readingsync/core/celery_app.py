from celery import Celery
from readingsync.config import settings

celery_app = Celery(
	"readingsync",
	broker=settings.REDIS_URL,
	backend=settings.REDIS_URL,
)

celery_app.conf.update(
	task_time_limit=60 * 30,         # 30 min hard limit
	task_soft_time_limit=60 * 25,
	worker_max_tasks_per_child=100,
	worker_prefetch_multiplier=1,
	result_expires=3600,
	task_track_started=True,
	include=["readingsync.workers.scheduled_tasks"],
)
