from concierge.api.gateway import (
    Completion,
    GatewayInitError,
    LanguageModelGateway,
    MalformedResponse,
    ProviderError,
    ToolCall,
)

__all__ = [
    "Completion",
    "GatewayInitError",
    "LanguageModelGateway",
    "MalformedResponse",
    "ProviderError",
    "ToolCall",
]
