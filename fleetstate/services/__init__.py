"""Datastore operations executed inside a caller-provided session."""
