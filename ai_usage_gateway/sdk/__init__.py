"""
SDK for the AI usage gateway.

The only entry points the application may use for model calls.
"""

from .chat import ChatSession
from .gateway import (
    GenerationGateway,
    GenerationResult,
    ReadinessStatus,
    StructuredResult,
)
from .provider import ModelProvider, OpenAIProvider
from .streaming import CancellationToken, UsageStream
from .templates import TemplateCatalog, TemplateSummary

__all__ = [
    "CancellationToken",
    "ChatSession",
    "GenerationGateway",
    "GenerationResult",
    "ModelProvider",
    "OpenAIProvider",
    "ReadinessStatus",
    "StructuredResult",
    "TemplateCatalog",
    "TemplateSummary",
    "UsageStream",
]
