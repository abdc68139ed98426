"""pyreactive - Two-way synchronization between local state trees and Supabase rows."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyreactive")
except PackageNotFoundError:
    __version__ = "0+local"
from pyreactive._serialize import to_plain
from pyreactive.client import SupabaseStore
from pyreactive.config import ReactiveConfig, RowFilter, StoreConfig, ThrottleConfig, split_path
from pyreactive.exceptions import (
    ConfigurationError,
    PathParseError,
    ReactiveError,
    RealtimeError,
    ReentrancyError,
    RemoteStoreError,
    UnsupportedOperationError,
)
from pyreactive.observable import Observable, ObservableDict, ObservableList, ObservableRuntime
from pyreactive.remote import ChangeSubscription, RemoteQuery, RemoteStore, SubscriptionHandle
from pyreactive.session import ReactiveHandle, SessionState, SyncSession, reactive
from pyreactive.state.events import ChangeType, RemoteChangeEvent, RemoteSnapshot

__all__ = [
    "__version__",
    "ChangeSubscription",
    "ChangeType",
    "ConfigurationError",
    "Observable",
    "ObservableDict",
    "ObservableList",
    "ObservableRuntime",
    "PathParseError",
    "ReactiveConfig",
    "ReactiveError",
    "ReactiveHandle",
    "RealtimeError",
    "ReentrancyError",
    "RemoteChangeEvent",
    "RemoteQuery",
    "RemoteSnapshot",
    "RemoteStore",
    "RemoteStoreError",
    "RowFilter",
    "SessionState",
    "StoreConfig",
    "SubscriptionHandle",
    "SupabaseStore",
    "SyncSession",
    "ThrottleConfig",
    "UnsupportedOperationError",
    "reactive",
    "split_path",
    "to_plain",
]
