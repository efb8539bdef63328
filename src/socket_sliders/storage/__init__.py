"""Persistence helpers for the job queue database."""
