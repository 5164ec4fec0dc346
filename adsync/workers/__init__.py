"""Ingestion background processes: scheduler (ARQ cron) and queue workers."""
