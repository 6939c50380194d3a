"""Textual integration for rippleflow. Opt-in — requires textual.

Outputs: bind_outputs() registers binding nodes (see rippleflow.bindings) that
look their widget up lazily, skip while the app is paused or not running, and
ignore NoMatches from widgets that are not mounted.

Inputs: widgets carrying the "to-dataflow" class feed the graph under their
widget id. bind_inputs() seeds the current values; apps forward Changed
messages with on_changed():

    class Calc(App):
        def on_mount(self):
            rtx.bind_outputs(self.flow, self, {"#total": "total"})
            rtx.bind_inputs(self.flow, self)

        def on_input_changed(self, event):
            rtx.on_changed(self.flow, event)
"""

from contextlib import contextmanager

from textual.css.query import NoMatches
from textual.widgets import Checkbox, RadioButton, Switch

from rippleflow.bindings import connect_outputs
from rippleflow.errors import BindingError

INPUT_CLASS = "to-dataflow"

# Module-owned pause state — keyed by id(app) so multiple apps work in tests.
_paused_apps: set[int] = set()


@contextmanager
def pause(app):
    """Suspend widget writes during widget replacement."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


class TextualHost:
    """Binding host whose elements are CSS selectors resolved against app."""

    def __init__(self, app) -> None:
        self.app = app

    def _apply(self, selector, fn) -> None:
        if not is_safe(self.app):
            return
        try:
            widget = self.app.query_one(selector)
        except NoMatches:
            return
        fn(widget)

    def set_content(self, selector, value) -> None:
        text = value if isinstance(value, str) else str(value)
        self._apply(selector, lambda w: w.update(text))

    def set_class(self, selector, name, enabled) -> None:
        self._apply(selector, lambda w: w.set_class(enabled, name))

    def set_style(self, selector, prop, value) -> None:
        self._apply(selector, lambda w: setattr(w.styles, prop, value))

    def set_attr(self, selector, name, value) -> None:
        self._apply(selector, lambda w: setattr(w, name, value))


def bind_outputs(flow, app, directives: dict[str, str]) -> list[str]:
    """Bind node values to widgets. directives maps selector -> descriptor."""
    host = TextualHost(app)
    names = []
    for selector, text in directives.items():
        names.extend(connect_outputs(flow, selector, text, host))
    return names


def input_value(widget):
    """Toggle widgets feed booleans, everything else its .value."""
    if isinstance(widget, (Checkbox, RadioButton, Switch)):
        return bool(widget.value)
    return widget.value


def _node_name(widget) -> str:
    name = widget.id
    if not name or not name.isidentifier():
        raise BindingError(f"Input widget id is not a valid node name: {widget!r}")
    return name


def bind_inputs(flow, app, selector: str = f".{INPUT_CLASS}"):
    """Seed the graph with the current values of all input widgets."""
    initial = {_node_name(w): input_value(w) for w in app.query(selector)}
    return flow.update(initial)


def on_changed(flow, event):
    """Forward a widget Changed message into the graph.

    Returns the update future, or None when the widget is not a bound input.
    """
    widget = event.control
    if widget is None or not widget.has_class(INPUT_CLASS):
        return None
    return flow.update({_node_name(widget): input_value(widget)})
