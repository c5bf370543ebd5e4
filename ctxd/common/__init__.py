"""
ctxd Common Module

Shared infrastructure for the capture pipeline and the retriever:
configuration, schemas, redaction and the append-only / locked stores.
"""

from .config import ContextPaths, CtxdConfig, ensure_directories, load_config
from .decision_store import DecisionStore
from .errors import CaptureError, ChecksumMismatch, CtxdError, InferenceFailure, WriteConflict
from .intent_log import EventLog, IntentLog
from .redaction import Redactor
from .snapshot_store import SnapshotStore

__all__ = [
    "ContextPaths",
    "CtxdConfig",
    "ensure_directories",
    "load_config",
    "DecisionStore",
    "CaptureError",
    "ChecksumMismatch",
    "CtxdError",
    "InferenceFailure",
    "WriteConflict",
    "EventLog",
    "IntentLog",
    "Redactor",
    "SnapshotStore",
]
