"""Task store backends."""

from taskloop.store.base import TaskStore, select_next
from taskloop.store.json_store import JsonTaskStore
from taskloop.store.tracker_store import TrackerTaskStore

__all__ = ["TaskStore", "select_next", "JsonTaskStore", "TrackerTaskStore"]
