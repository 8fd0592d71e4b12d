# Asset inventory package
from .server import create_app
from .state import AppState
from .reconciler import Reconciler
from .record_store import RecordStore
from .schema import SchemaRegistry

__all__ = ['create_app', 'AppState', 'Reconciler', 'RecordStore', 'SchemaRegistry']
