"""Background workers: Celery tasks and the inbound event consumer.

- celery_app: Celery application and beat schedule
- tasks: match expiry, expired-match sweep, outbox relay, archival scan
- event_consumer: Redis Streams consumer dispatching inbound events
"""
