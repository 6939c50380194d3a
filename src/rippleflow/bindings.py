"""Declarative output bindings — node values pushed into display elements.

A descriptor is a comma-separated list of directives:

    total                 set the element's content
    warn:class:error      toggle CSS class "error" from the node's truthiness
    color:style:bg-color  set style property bg_color
    label:attr:tooltip    set attribute tooltip

Each directive becomes a node whose single dependency is the bound node and
whose producer is a closure over the element and a host adapter. The host
decides what "content", "class", "style" and "attr" mean for its widgets.
"""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from typing import Callable, Protocol

from rippleflow.errors import BindingError
from rippleflow.graph import depends_on

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_KINDS = ("class", "style", "attr")

# Unique suffixes for generated binding node names.
_id_counter = itertools.count(1)


class Host(Protocol):
    def set_content(self, element, value) -> None: ...
    def set_class(self, element, name: str, enabled: bool) -> None: ...
    def set_style(self, element, prop: str, value) -> None: ...
    def set_attr(self, element, name: str, value) -> None: ...


def _blank(value):
    return "" if value is None else value


@dataclass(frozen=True)
class Binding:
    node: str
    kind: str = "content"
    target: str | None = None

    def setter(self, element, host: Host) -> Callable[[object], None]:
        """Build the one-argument closure that applies a value to element."""
        if self.kind == "class":
            def apply(value):
                if value is not None:
                    host.set_class(element, self.target, bool(value))
        elif self.kind == "style":
            prop = self.target.replace("-", "_")

            def apply(value):
                host.set_style(element, prop, _blank(value))
        elif self.kind == "attr":
            def apply(value):
                host.set_attr(element, self.target, _blank(value))
        else:
            def apply(value):
                host.set_content(element, _blank(value))
        return apply


def _parse_one(directive: str) -> Binding:
    for kind in _KINDS:
        marker = f":{kind}:"
        if marker in directive:
            node, _, target = directive.partition(marker)
            if not target:
                raise BindingError(f"Missing {kind} name in binding: {directive!r}")
            break
    else:
        node, kind, target = directive, "content", None
    if not _IDENT.match(node):
        raise BindingError(f"Binding does not name a valid node: {directive!r}")
    return Binding(node, kind, target)


def parse(text: str) -> list[Binding]:
    """Parse a descriptor string into bindings."""
    return [_parse_one(part.strip()) for part in text.split(",")]


def connect_outputs(flow, element, text: str, host: Host) -> list[str]:
    """Register one binding node per directive of text. Returns the node names."""
    names = []
    producers = {}
    for binding in parse(text):
        name = f"bind_{binding.node}_{next(_id_counter)}"
        producers[name] = depends_on(binding.node)(binding.setter(element, host))
        names.append(name)
    flow.register(producers)
    return names
