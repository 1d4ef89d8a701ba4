"""Celery application."""
