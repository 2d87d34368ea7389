"""Persisted data models."""
