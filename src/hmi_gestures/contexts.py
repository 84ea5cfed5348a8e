"""Context layer boundary.

A context (canvas, sidebar, properties panel...) owns application state the
engine never reads directly. It supplies guard predicates for
registrations and receives fired gestures while active.

Subclass API:
    class CanvasContext(GestureContext):
        name = "canvas"

        def on_gesture(self, event):
            ...

Or use the decorator API:
    canvas = GestureContext(name="canvas")

    @canvas.predicate("has_selection")
    def has_selection():
        return bool(selection)

    @canvas.handler("delete")
    def on_delete(event):
        selection.clear()

    engine.register("delete").pattern("zigzag").condition(canvas.requires("has_selection"))
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Optional

from hmi_gestures.errors import ConfigurationError

if TYPE_CHECKING:
    from hmi_gestures.dispatcher import GestureEvent
    from hmi_gestures.events import EventBus

logger = logging.getLogger("hmi_gestures.contexts")

CONTEXT_CHANGED = "context-changed"


class GestureContext:
    """Supplies predicates and receives fired gestures while active."""

    name: str = "unnamed"
    description: str = ""

    def __init__(self, name: Optional[str] = None, description: Optional[str] = None):
        if name:
            self.name = name
        if description is not None:
            self.description = description
        self._handlers: dict[str, list[Callable]] = {}
        self._predicates: dict[str, Callable[[], bool]] = {}
        self._active = False

    # -- predicates ------------------------------------------------------

    def predicate(self, predicate_name: str):
        """Decorator to register a named guard predicate."""
        def decorator(fn: Callable[[], bool]):
            self._predicates[predicate_name] = fn
            return fn
        return decorator

    def check(self, predicate_name: str) -> bool:
        fn = self._predicates.get(predicate_name)
        if fn is None:
            raise ConfigurationError(f"context '{self.name}' has no predicate '{predicate_name}'")
        return bool(fn())

    def requires(self, *predicate_names: str) -> Callable[[], bool]:
        """A registration condition: this context is active and every named predicate holds."""
        missing = [p for p in predicate_names if p not in self._predicates]
        if missing:
            raise ConfigurationError(
                f"context '{self.name}' has no predicate(s): {', '.join(missing)}"
            )

        def condition() -> bool:
            return self._active and all(self.check(p) for p in predicate_names)

        return condition

    def is_active(self) -> bool:
        return self._active

    # -- handlers --------------------------------------------------------

    def handler(self, gesture_name: str = "*"):
        """Decorator to register a handler for a specific gesture."""
        def decorator(fn: Callable):
            self._handlers.setdefault(gesture_name, []).append(fn)
            return fn
        return decorator

    def handle_gesture(self, event: GestureEvent):
        if not self._active:
            return
        self.on_gesture(event)

    def on_gesture(self, event: GestureEvent):
        """Dispatch to decorator handlers. Override for custom routing."""
        handlers = self._handlers.get(event.name, []) + self._handlers.get("*", [])
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Context %s handler error: %s", self.name, e)

    # -- lifecycle -------------------------------------------------------

    def activate(self):
        if self._active:
            return
        self._active = True
        logger.info("Context %s activated", self.name)
        self.on_activate()

    def deactivate(self):
        if not self._active:
            return
        self._active = False
        logger.info("Context %s deactivated", self.name)
        self.on_deactivate()

    def on_activate(self):
        pass

    def on_deactivate(self):
        pass


class ContextManager:
    """Registered contexts and which of them are active.

    Usage:
        contexts = ContextManager(bus)
        contexts.register(canvas)
        contexts.set_active("canvas")

        # After each tick:
        for event in fired:
            contexts.dispatch(event)
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self._contexts: dict[str, GestureContext] = {}
        self._bus = bus

    def register(self, context: GestureContext):
        if context.name in self._contexts:
            raise ConfigurationError(f"context '{context.name}' is already registered")
        self._contexts[context.name] = context
        logger.info("Registered context: %s", context.name)

    def unregister(self, name: str) -> bool:
        context = self._contexts.pop(name, None)
        if context is None:
            return False
        context.deactivate()
        return True

    def get(self, name: str) -> Optional[GestureContext]:
        return self._contexts.get(name)

    def set_active(self, name: str) -> GestureContext:
        """Make ``name`` the only active context."""
        context = self._contexts.get(name)
        if context is None:
            raise ConfigurationError(f"unknown context '{name}'")
        previous = self.active_names
        for other in self._contexts.values():
            if other is not context:
                other.deactivate()
        context.activate()
        if self._bus:
            self._bus.publish(CONTEXT_CHANGED, {"previous": previous, "current": name})
        return context

    def activate_all(self):
        for context in self._contexts.values():
            context.activate()

    def deactivate_all(self):
        for context in self._contexts.values():
            context.deactivate()

    def dispatch(self, event: GestureEvent):
        """Send a fired gesture to every active context."""
        for context in list(self._contexts.values()):
            try:
                context.handle_gesture(event)
            except Exception as e:
                logger.error("Context %s dispatch error: %s", context.name, e)

    @property
    def active_names(self) -> list[str]:
        return [name for name, ctx in self._contexts.items() if ctx.is_active()]

    @property
    def names(self) -> list[str]:
        return list(self._contexts)

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, name: str) -> bool:
        return name in self._contexts
