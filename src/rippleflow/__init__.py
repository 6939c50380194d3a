"""rippleflow: batched, memoized dataflow propagation for Python."""

from importlib.metadata import version as _version

__version__ = _version("rippleflow")

from rippleflow._store import UNSET
from rippleflow.engine import Dataflow
from rippleflow.graph import DependencyGraph, depends_on, upstream_names_of
from rippleflow.bindings import Binding, connect_outputs, parse as parse_bindings
from rippleflow.errors import (
    BindingError,
    CycleError,
    DataflowError,
    DuplicateNodeError,
    InvalidBatchValueError,
    InvalidProducerError,
    NodeExecutionError,
    RegistrationError,
)
# textual NOT auto-imported — opt-in only

__all__ = [
    "Dataflow",
    "DependencyGraph",
    "depends_on",
    "upstream_names_of",
    "UNSET",
    "Binding",
    "connect_outputs",
    "parse_bindings",
    "DataflowError",
    "RegistrationError",
    "DuplicateNodeError",
    "InvalidProducerError",
    "CycleError",
    "InvalidBatchValueError",
    "NodeExecutionError",
    "BindingError",
]
