"""Durable job queue, workers and scheduler."""
