"""Privileged rule engine link: client bridge and reference host."""

from .bridge import ChunkAccumulator, EngineBridge, EnginePayload
from .server import EngineServer, split_payload

__all__ = [
    "ChunkAccumulator",
    "EngineBridge",
    "EnginePayload",
    "EngineServer",
    "split_payload",
]
