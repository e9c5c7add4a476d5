"""Durable checkpoint storage."""

from maci.persistence.checkpoint_store import CheckpointStore

__all__ = ["CheckpointStore"]
