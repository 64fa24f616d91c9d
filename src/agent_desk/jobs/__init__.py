"""Durable AI job queue backed by SQLite.

Workers claim the oldest eligible queued job with a compare-and-set update,
so two workers never hold the same job. Transient failures are requeued with
capped exponential backoff; the reaper returns jobs whose worker died to the
queue. Every transition is appended to ``ai_job_events``.

A broker (Redis, RabbitMQ) would add an operational dependency for a
single-node deployment whose queue lives next to the workflow tables it
advances in the same database transaction.
"""
