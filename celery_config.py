"""
Celery configuration for background refresh and snapshot jobs.
"""
import os
from celery import Celery
from celery.schedules import crontab
from kombu import Exchange, Queue

# Initialize Celery
celery = Celery('social_metrics')

# Redis configuration from Heroku or local
redis_url = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# SSL/TLS settings for secure Redis connections
broker_use_ssl = None
redis_backend_use_ssl = None

# Managed Redis URLs use 'redis://' but SSL is required in production
if redis_url.startswith('redis://') and 'localhost' not in redis_url:
    redis_url = redis_url.replace('redis://', 'rediss://')
    import ssl
    broker_use_ssl = {
        'ssl_cert_reqs': ssl.CERT_NONE  # Managed Redis presents a self-signed cert
    }
    redis_backend_use_ssl = broker_use_ssl

celery.conf.update(
    broker_url=redis_url,
    result_backend=redis_url,
    broker_use_ssl=broker_use_ssl,
    redis_backend_use_ssl=redis_backend_use_ssl,

    # Task settings
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],
    timezone='UTC',
    enable_utc=True,

    # A refresh batch must finish well inside one worker slot
    task_time_limit=900,
    task_soft_time_limit=840,
    worker_max_tasks_per_child=50,

    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=86400,
    result_persistent=True,

    # Task routing
    task_default_queue='default',
    task_queues=(
        Queue('default', Exchange('default'), routing_key='default'),
        Queue('ingestion', Exchange('ingestion'), routing_key='ingestion'),
        Queue('aggregation', Exchange('aggregation'), routing_key='aggregation'),
    ),
    task_routes={
        'tasks.refresh_handle': {'queue': 'ingestion'},
        'tasks.refresh_platform_batch': {'queue': 'ingestion'},
        'tasks.drain_retry_queue': {'queue': 'ingestion'},
        'tasks.sync_platform_snapshots': {'queue': 'aggregation'},
    },

    # Periodic jobs (run with `celery -A tasks beat`)
    beat_schedule={
        'refresh-tiktok-daily': {
            'task': 'tasks.refresh_platform_batch',
            'schedule': crontab(hour=1, minute=0),
            'kwargs': {'platform': 'tiktok'},
        },
        'refresh-instagram-daily': {
            'task': 'tasks.refresh_platform_batch',
            'schedule': crontab(hour=2, minute=0),
            'kwargs': {'platform': 'instagram'},
        },
        'drain-retries': {
            'task': 'tasks.drain_retry_queue',
            'schedule': crontab(minute='*/15'),
        },
    },

    # Connection settings
    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,
)

# Export celery app
celery_app = celery
