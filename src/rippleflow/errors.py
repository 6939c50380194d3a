"""Exception taxonomy for rippleflow.

Registration and batch-validation errors are raised synchronously to the
caller. CycleError aborts the batch that reached the cycle. NodeExecutionError
is never raised out of an update: it is the record stored in Dataflow.errors.
"""

from __future__ import annotations


class DataflowError(Exception):
    """Base class for every rippleflow error."""


class RegistrationError(DataflowError):
    """A node could not be registered."""


class DuplicateNodeError(RegistrationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Node is already registered: {name}")
        self.name = name


class InvalidProducerError(RegistrationError):
    def __init__(self, name: str, producer: object) -> None:
        super().__init__(f"Producer for {name!r} is not callable: {producer!r}")
        self.name = name
        self.producer = producer


class CycleError(DataflowError):
    """A dependency cycle was reached while computing a batch's closure.

    ``path`` lists the nodes of the cycle with the first name repeated at the end.
    """

    def __init__(self, path: list[str]) -> None:
        super().__init__("Cycle detected, consisting of nodes: " + " -> ".join(path))
        self.path = path


class InvalidBatchValueError(DataflowError):
    def __init__(self, name: str, value: object) -> None:
        super().__init__(f"Value of {name!r} cannot be awaitable: {value!r}")
        self.name = name
        self.value = value


class NodeExecutionError(DataflowError):
    """Record of a producer that raised, kept in the engine's error sink."""

    def __init__(self, node: str, params: list, cause: BaseException) -> None:
        super().__init__(f"Error executing node {node!r}: {cause!r}")
        self.node = node
        self.params = params
        self.cause = cause
        self.__cause__ = cause


class BindingError(DataflowError):
    """A binding descriptor could not be parsed."""
