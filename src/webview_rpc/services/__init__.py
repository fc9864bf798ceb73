"""Service definitions shared by host and view."""

from .ui import (
    UI_SERVICE,
    UiController,
    UiServiceClient,
    UiTopic,
    WebviewProviderType,
)

__all__ = [
    "UI_SERVICE",
    "UiController",
    "UiServiceClient",
    "UiTopic",
    "WebviewProviderType",
]
