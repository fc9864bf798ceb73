"""UI service shared by the host and the webview.

The host implements `cline.UiService`; the view calls it. Unary methods
carry small request/response messages. Subscriptions are pulses for UI
events that happen on the host side (toolbar buttons, context-menu
"add to input").

Host side:
    hub = EventHub()
    controller = UiController(hub)
    controller.register(endpoint)
    ...
    controller.click_chat_button()        # view subscribers get an Empty event

View side:
    ui = UiServiceClient(endpoint)
    await ui.scroll_to_settings("models")
    async with ui.subscribe_to_chat_button_clicked() as clicks:
        async for _ in clicks:
            focus_chat_input()
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Mapping
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..hub import EventHub
from ..service_table import CallContext, Handler, MethodDefinition, ServiceDefinition

if TYPE_CHECKING:
    from ..endpoint import Endpoint
    from ..service_table import ServiceRegistration, ServiceTable
    from ..stream import EventStream

logger = logging.getLogger(__name__)

SERVICE_NAME = "cline.UiService"


# =============================================================================
# Messages
# =============================================================================


class Metadata(BaseModel):
    """Request metadata. Opaque to the UI service."""

    model_config = ConfigDict(extra="allow")


class EmptyRequest(BaseModel):
    metadata: Metadata | None = None


class StringRequest(BaseModel):
    metadata: Metadata | None = None
    value: str = ""


class Empty(BaseModel):
    pass


class StringValue(BaseModel):
    value: str = ""


class BooleanValue(BaseModel):
    value: bool = False


class WebviewProviderType(IntEnum):
    """Which webview instance a subscription belongs to."""

    SIDEBAR = 0
    TAB = 1


class WebviewProviderTypeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    metadata: Metadata | None = None
    provider_type: WebviewProviderType = Field(
        default=WebviewProviderType.SIDEBAR, alias="providerType"
    )

    @field_validator("provider_type", mode="before")
    @classmethod
    def _enum_name(cls, value: Any) -> Any:
        # Accept the enum name ("TAB") as well as the number
        if isinstance(value, str) and value in WebviewProviderType.__members__:
            return WebviewProviderType[value]
        return value


class UiTopic(str, Enum):
    """Hub topics the UI controller publishes and listens to."""

    SCROLL_TO_SETTINGS = "scrollToSettings"
    ADD_TO_INPUT = "addToInput"
    MCP_BUTTON_CLICKED = "mcpButtonClicked"
    HISTORY_BUTTON_CLICKED = "historyButtonClicked"
    CHAT_BUTTON_CLICKED = "chatButtonClicked"


# =============================================================================
# Service definition
# =============================================================================

UI_SERVICE = ServiceDefinition(
    name=SERVICE_NAME,
    methods=(
        MethodDefinition(
            "scrollToSettings",
            request_model=StringRequest,
            response_model=Empty,
            description="Scrolls to a specific settings section in the settings view",
        ),
        MethodDefinition(
            "onDidShowAnnouncement",
            request_model=EmptyRequest,
            response_model=BooleanValue,
            description=(
                "Marks the current announcement as shown and returns whether "
                "an announcement should still be shown"
            ),
        ),
        MethodDefinition(
            "subscribeToAddToInput",
            streaming=True,
            request_model=EmptyRequest,
            response_model=StringValue,
            description="Text added to the chat input from the editor context menu",
        ),
        MethodDefinition(
            "subscribeToMcpButtonClicked",
            streaming=True,
            request_model=WebviewProviderTypeRequest,
            response_model=Empty,
            description="MCP toolbar button clicks for one webview provider",
        ),
        MethodDefinition(
            "subscribeToHistoryButtonClicked",
            streaming=True,
            request_model=WebviewProviderTypeRequest,
            response_model=Empty,
            description="History toolbar button clicks for one webview provider",
        ),
        MethodDefinition(
            "subscribeToChatButtonClicked",
            streaming=True,
            request_model=EmptyRequest,
            response_model=Empty,
            description="Chat button clicks in the editor",
        ),
    ),
)


# =============================================================================
# Host side
# =============================================================================


class UiController:
    """Host-side implementation of the UI service.

    Editor integrations call the click_* / add_to_input methods; the
    handlers forward those events to every subscribed view.
    """

    def __init__(self, hub: EventHub | None = None, *, announcement: str | None = None) -> None:
        """Initialize controller.

        Args:
            hub: Event hub shared with the editor integration (default: new hub)
            announcement: Identifier of the current announcement, if any
        """
        self.hub = hub or EventHub()
        self.last_settings_section: str | None = None
        self._announcement = announcement
        self._shown_announcement: str | None = None

    # Editor-facing events ----------------------------------------------------

    def add_to_input(self, text: str) -> int:
        """Send text to the chat input of every subscribed view."""
        return self.hub.publish(UiTopic.ADD_TO_INPUT.value, text)

    def click_mcp_button(self, provider_type: WebviewProviderType) -> int:
        return self.hub.publish(UiTopic.MCP_BUTTON_CLICKED.value, provider_type)

    def click_history_button(self, provider_type: WebviewProviderType) -> int:
        return self.hub.publish(UiTopic.HISTORY_BUTTON_CLICKED.value, provider_type)

    def click_chat_button(self) -> int:
        return self.hub.publish(UiTopic.CHAT_BUTTON_CLICKED.value)

    def set_announcement(self, announcement: str | None) -> None:
        """Make a new announcement current (None clears it)."""
        self._announcement = announcement

    @property
    def should_show_announcement(self) -> bool:
        return self._announcement is not None and self._announcement != self._shown_announcement

    # Handlers ----------------------------------------------------------------

    async def scroll_to_settings(self, request: StringRequest, context: CallContext) -> Empty:
        self.last_settings_section = request.value
        self.hub.publish(UiTopic.SCROLL_TO_SETTINGS.value, request.value)
        return Empty()

    async def on_did_show_announcement(
        self, request: EmptyRequest, context: CallContext
    ) -> BooleanValue:
        self._shown_announcement = self._announcement
        return BooleanValue(value=self.should_show_announcement)

    async def subscribe_to_add_to_input(
        self, request: EmptyRequest, context: CallContext
    ) -> AsyncIterator[StringValue]:
        async with contextlib.aclosing(self.hub.stream(UiTopic.ADD_TO_INPUT.value)) as texts:
            async for text in texts:
                yield StringValue(value=text)

    async def subscribe_to_mcp_button_clicked(
        self, request: WebviewProviderTypeRequest, context: CallContext
    ) -> AsyncIterator[Empty]:
        async for pulse in self._clicks(UiTopic.MCP_BUTTON_CLICKED, request.provider_type):
            yield pulse

    async def subscribe_to_history_button_clicked(
        self, request: WebviewProviderTypeRequest, context: CallContext
    ) -> AsyncIterator[Empty]:
        async for pulse in self._clicks(UiTopic.HISTORY_BUTTON_CLICKED, request.provider_type):
            yield pulse

    async def subscribe_to_chat_button_clicked(
        self, request: EmptyRequest, context: CallContext
    ) -> AsyncIterator[Empty]:
        topic = UiTopic.CHAT_BUTTON_CLICKED.value
        async with contextlib.aclosing(self.hub.stream(topic)) as clicks:
            async for _ in clicks:
                yield Empty()

    async def _clicks(
        self, topic: UiTopic, provider_type: WebviewProviderType
    ) -> AsyncIterator[Empty]:
        async with contextlib.aclosing(self.hub.stream(topic.value)) as clicks:
            async for clicked_type in clicks:
                if clicked_type == provider_type:
                    yield Empty()

    # Registration ------------------------------------------------------------

    def handlers(self) -> Mapping[str, Handler]:
        """Method name → handler for UI_SERVICE."""
        return {
            "scrollToSettings": self.scroll_to_settings,
            "onDidShowAnnouncement": self.on_did_show_announcement,
            "subscribeToAddToInput": self.subscribe_to_add_to_input,
            "subscribeToMcpButtonClicked": self.subscribe_to_mcp_button_clicked,
            "subscribeToHistoryButtonClicked": self.subscribe_to_history_button_clicked,
            "subscribeToChatButtonClicked": self.subscribe_to_chat_button_clicked,
        }

    def register(self, target: Endpoint | ServiceTable) -> list[ServiceRegistration]:
        """Register every UI method on an endpoint or service table."""
        return target.register_service(UI_SERVICE, self.handlers())


# =============================================================================
# View side
# =============================================================================


class UiServiceClient:
    """Typed view-side stub for the UI service."""

    def __init__(self, endpoint: Endpoint) -> None:
        self._endpoint = endpoint

    async def scroll_to_settings(self, section: str, **kwargs: Any) -> Empty:
        return await self._endpoint.call(
            SERVICE_NAME,
            "scrollToSettings",
            StringRequest(value=section),
            result_model=Empty,
            **kwargs,
        )

    async def on_did_show_announcement(self, **kwargs: Any) -> bool:
        result = await self._endpoint.call(
            SERVICE_NAME,
            "onDidShowAnnouncement",
            EmptyRequest(),
            result_model=BooleanValue,
            **kwargs,
        )
        return result.value

    def subscribe_to_add_to_input(self) -> EventStream[StringValue]:
        return self._endpoint.subscribe(
            SERVICE_NAME, "subscribeToAddToInput", EmptyRequest(), event_model=StringValue
        )

    def subscribe_to_mcp_button_clicked(
        self, provider_type: WebviewProviderType = WebviewProviderType.SIDEBAR
    ) -> EventStream[Empty]:
        return self._endpoint.subscribe(
            SERVICE_NAME,
            "subscribeToMcpButtonClicked",
            WebviewProviderTypeRequest(provider_type=provider_type),
            event_model=Empty,
        )

    def subscribe_to_history_button_clicked(
        self, provider_type: WebviewProviderType = WebviewProviderType.SIDEBAR
    ) -> EventStream[Empty]:
        return self._endpoint.subscribe(
            SERVICE_NAME,
            "subscribeToHistoryButtonClicked",
            WebviewProviderTypeRequest(provider_type=provider_type),
            event_model=Empty,
        )

    def subscribe_to_chat_button_clicked(self) -> EventStream[Empty]:
        return self._endpoint.subscribe(
            SERVICE_NAME, "subscribeToChatButtonClicked", EmptyRequest(), event_model=Empty
        )
