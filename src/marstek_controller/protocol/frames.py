"""JSON-RPC style datagram framing for the Marstek local API.

Requests are ``{"id": int, "method": str, "params": {...}}``. Replies are
``{"src": str, "id"?: int, "result"?: {...}, "error"?: {"code"?, "message"}}``.
``parse_reply`` is the single place where a reply is classified; anything it
cannot classify is a ``ProtocolError``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, cast

from marstek_controller.exceptions import ProtocolError

__all__ = [
    "ErrorReply",
    "ReplyFrame",
    "ResultReply",
    "decode_datagram",
    "encode_request",
    "parse_reply",
]

# every documented method takes the battery index, which is always 0
DEFAULT_PARAMS: dict[str, Any] = {"id": 0}


@dataclass(frozen=True, slots=True)
class ResultReply:
    src: str
    request_id: int | str | None
    result: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ErrorReply:
    src: str
    request_id: int | str | None
    message: str
    code: int | None = None


ReplyFrame = ResultReply | ErrorReply


def encode_request(request_id: int | str, method: str, params: Mapping[str, Any] | None = None) -> bytes:
    """Serialize a request datagram.

    Args:
        request_id: Identifier the device echoes back in its reply
        method: RPC method, e.g. ``"ES.GetStatus"``
        params: Method parameters (defaults to ``{"id": 0}``)

    Returns:
        UTF-8 encoded JSON

    """
    body = {
        "id": request_id,
        "method": method,
        "params": dict(params) if params is not None else dict(DEFAULT_PARAMS),
    }
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def decode_datagram(data: bytes) -> dict[str, Any]:
    """Decode a raw datagram into a message object.

    Raises:
        ProtocolError: Not UTF-8 JSON, not an object, or no string ``src`` tag

    """
    try:
        decoded: object = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"undecodable datagram: {e}", payload=data) from e
    if not isinstance(decoded, dict):
        raise ProtocolError("datagram is not a JSON object", payload=decoded)
    message = cast("dict[str, Any]", decoded)
    src = message.get("src")
    if not isinstance(src, str) or not src:
        raise ProtocolError("datagram has no source tag", payload=message)
    return message


def parse_reply(message: Mapping[str, Any]) -> ReplyFrame:
    """Classify a decoded message as a result or an error reply.

    Raises:
        ProtocolError: Neither a result object nor an error is present

    """
    src = str(message.get("src", ""))
    request_id = message.get("id")
    error = message.get("error")
    if error is not None:
        if isinstance(error, Mapping):
            error_map = cast("Mapping[str, Any]", error)
            code = error_map.get("code")
            text = error_map.get("message") or "device returned an error"
            return ErrorReply(
                src=src,
                request_id=request_id,
                message=str(text),
                code=code if isinstance(code, int) and not isinstance(code, bool) else None,
            )
        return ErrorReply(src=src, request_id=request_id, message=str(error))

    result = message.get("result")
    if isinstance(result, dict):
        return ResultReply(src=src, request_id=request_id, result=cast("dict[str, Any]", result))
    raise ProtocolError("unexpected reply shape", payload=dict(message))
