"""Service Table - handler registration for inbound calls.

The side that implements a service registers one handler per
(service, method) pair. The dispatcher looks handlers up here when a
REQUEST frame arrives.

Architecture:
- MethodDefinition / ServiceDefinition: static, enumerable description of a service
- ServiceRegistration: one bound (service, method) → handler entry
- CallContext: per-call information passed to handlers, including cancellation
- ServiceTable: the lookup table itself

Usage:
    async def scroll_to_settings(request: StringRequest, context: CallContext) -> Empty:
        ...
        return Empty()

    async def chat_clicks(request: EmptyRequest, context: CallContext):
        async for _ in hub.stream("chat"):
            yield Empty()

    table = ServiceTable()
    table.register("cline.UiService", "scrollToSettings", scroll_to_settings,
                   request_model=StringRequest)
    table.register("cline.UiService", "subscribeToChatButtonClicked", chat_clicks,
                   streaming=True)

Handlers:
    Unary handlers take (payload, context) and return the result (plain
    function or coroutine function). Streaming handlers take the same
    arguments and return an async iterator (usually an async generator)
    or a plain iterable of events.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# The actual signatures are:
#   unary:     Callable[[Any, CallContext], Awaitable[Any] | Any]
#   streaming: Callable[[Any, CallContext], AsyncIterator[Any] | Iterable[Any]]
Handler = Callable[..., Any]


@dataclass
class CallContext:
    """Context passed to handlers for one inbound call.

    Cancellation is cooperative. A CANCEL frame from the caller sets
    `cancelled`; long-running handlers can check it or await
    `wait_cancelled()`.
    """

    service: str
    method: str
    call_id: int
    streaming: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        """True once the caller has cancelled this call."""
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Mark the call as cancelled."""
        self._cancel_event.set()

    async def wait_cancelled(self) -> None:
        """Block until the call is cancelled."""
        await self._cancel_event.wait()


@dataclass(frozen=True)
class MethodDefinition:
    """Static description of one service method.

    Attributes:
        name: Method name as sent on the wire
        streaming: True for server-streaming methods
        request_model: Optional pydantic model the payload is validated into
        response_model: Optional pydantic model for results / events
        description: Human-readable description
    """

    name: str
    streaming: bool = False
    request_model: type[BaseModel] | None = None
    response_model: type[BaseModel] | None = None
    description: str = ""


@dataclass(frozen=True)
class ServiceDefinition:
    """Static, enumerable description of a service."""

    name: str
    methods: tuple[MethodDefinition, ...]

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Service name cannot be empty")
        names = [m.name for m in self.methods]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate methods in {self.name}: {sorted(duplicates)}")

    def __iter__(self) -> Iterator[MethodDefinition]:
        return iter(self.methods)

    def method(self, name: str) -> MethodDefinition:
        """Get a method definition by name.

        Raises:
            KeyError: If the service has no such method
        """
        for definition in self.methods:
            if definition.name == name:
                return definition
        raise KeyError(f"{self.name} has no method {name!r}")


@dataclass(frozen=True)
class ServiceRegistration:
    """A bound (service, method) → handler entry."""

    service: str
    method: str
    handler: Handler
    streaming: bool = False
    request_model: type[BaseModel] | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not self.service:
            raise ValueError("Service name cannot be empty")
        if not self.method:
            raise ValueError("Method name cannot be empty")
        if not callable(self.handler):
            raise ValueError(f"Handler for {self.service}/{self.method} must be callable")

    @property
    def key(self) -> tuple[str, str]:
        return (self.service, self.method)


class ServiceTable:
    """Registry of inbound handlers keyed by (service, method).

    Registering the same key twice logs a warning and keeps the latest
    handler.
    """

    def __init__(self) -> None:
        self._registrations: dict[tuple[str, str], ServiceRegistration] = {}

    def register(
        self,
        service: str,
        method: str,
        handler: Handler,
        *,
        streaming: bool = False,
        request_model: type[BaseModel] | None = None,
        description: str = "",
    ) -> ServiceRegistration:
        """Register a handler.

        Args:
            service: Service name
            method: Method name
            handler: Callable taking (payload, context)
            streaming: True if the handler produces a stream of events
            request_model: Optional pydantic model to validate the payload into
            description: Human-readable description

        Returns:
            The new registration
        """
        registration = ServiceRegistration(
            service=service,
            method=method,
            handler=handler,
            streaming=streaming,
            request_model=request_model,
            description=description,
        )
        return self.add(registration)

    def add(self, registration: ServiceRegistration) -> ServiceRegistration:
        """Add a prebuilt registration (last write wins)."""
        if registration.key in self._registrations:
            logger.warning(
                f"Handler for {registration.service}/{registration.method} "
                "registered twice; keeping the latest"
            )
        else:
            logger.debug(f"Registered handler: {registration.service}/{registration.method}")
        self._registrations[registration.key] = registration
        return registration

    def register_service(
        self,
        definition: ServiceDefinition,
        handlers: Mapping[str, Handler],
    ) -> list[ServiceRegistration]:
        """Bind every method of a service definition to a handler.

        Args:
            definition: The service definition
            handlers: Method name → handler

        Returns:
            The registrations created, in definition order

        Raises:
            ValueError: If a declared method has no handler, or a handler
                has no declared method
        """
        declared = {m.name for m in definition.methods}
        missing = declared - handlers.keys()
        unknown = handlers.keys() - declared
        if missing:
            raise ValueError(f"No handler for {definition.name} methods: {sorted(missing)}")
        if unknown:
            raise ValueError(f"{definition.name} does not declare methods: {sorted(unknown)}")

        registrations = [
            self.register(
                definition.name,
                method.name,
                handlers[method.name],
                streaming=method.streaming,
                request_model=method.request_model,
                description=method.description,
            )
            for method in definition.methods
        ]
        logger.info(f"Registered service {definition.name} ({len(registrations)} methods)")
        return registrations

    def lookup(self, service: str, method: str) -> ServiceRegistration | None:
        """Find the handler for a method, or None if it is not registered."""
        return self._registrations.get((service, method))

    def unregister(self, service: str, method: str) -> bool:
        """Remove a registration.

        Returns:
            True if the registration existed
        """
        return self._registrations.pop((service, method), None) is not None

    def list_methods(self, service: str | None = None) -> list[ServiceRegistration]:
        """List registrations, optionally for one service."""
        return [
            registration
            for registration in self._registrations.values()
            if service is None or registration.service == service
        ]

    def __contains__(self, key: object) -> bool:
        return key in self._registrations

    @property
    def count(self) -> int:
        """Number of registered methods."""
        return len(self._registrations)
