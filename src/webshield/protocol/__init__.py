"""Wire protocol: line-delimited JSON over Unix domain sockets."""

from .messages import (
    GET_ADVANCED_BLOCKING_DATA,
    GET_RULES_FOR_HOST,
    REPORT_SCRIPTLET_ERROR,
    RULES_UPDATED,
    EngineReply,
    EngineRequest,
    ScriptletErrorReport,
    decode,
    encode,
)
from .transport import SocketError, get_client_transport, get_server

__all__ = [
    "GET_ADVANCED_BLOCKING_DATA",
    "GET_RULES_FOR_HOST",
    "REPORT_SCRIPTLET_ERROR",
    "RULES_UPDATED",
    "EngineReply",
    "EngineRequest",
    "ScriptletErrorReport",
    "SocketError",
    "decode",
    "encode",
    "get_client_transport",
    "get_server",
]
