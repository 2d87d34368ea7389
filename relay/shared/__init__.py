"""Persisted models and storage services shared by engine and web layers."""
