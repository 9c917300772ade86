from .gateway import (
    LLMError,
    ProviderFailure,
    ProviderGateway,
    ProviderResult,
    ProviderSuccess,
    get_gateway,
)
from .jsonparse import JSONParseError, parse_json_object
from .routing import AIRoute, AIRouting, TASKS, load_route, load_routing

__all__ = [
    "AIRoute",
    "AIRouting",
    "TASKS",
    "load_route",
    "load_routing",
    "LLMError",
    "ProviderFailure",
    "ProviderGateway",
    "ProviderResult",
    "ProviderSuccess",
    "get_gateway",
    "JSONParseError",
    "parse_json_object",
]
