"""Persistence: the Store protocol, its SQLAlchemy implementation and the user directory."""

from careline.storage.base import Store
from careline.storage.directory import Directory, SqlDirectory
from careline.storage.sql import SqlStore

__all__ = ["Directory", "SqlDirectory", "SqlStore", "Store"]
