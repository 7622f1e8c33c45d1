"""Newline-delimited JSON-RPC 2.0 codec for the plugin stdio protocol.

A validation sends exactly one ``tools/list`` request and reads stdout until
the response carrying the same ``id`` arrives. Notifications, log lines and
responses to other ids are skipped.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

from ..core.exceptions import ProtocolComplianceError, ProtocolTimeoutError
from ..core.logging import get_logger
from ..schemas.plugin import ToolInfo

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"
LIST_TOOLS_METHOD = "tools/list"
READ_CHUNK_BYTES = 64 * 1024
# Error text taken from a plugin is truncated before it reaches a result
MAX_ERROR_TEXT = 200


def new_request_id() -> str:
    return f"mcpgate-{uuid.uuid4().hex}"


def encode_request(request_id: str, method: str, params: dict[str, Any] | None = None) -> bytes:
    """Encode one request frame, newline terminated."""
    frame = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params or {}}
    return (json.dumps(frame, separators=(",", ":")) + "\n").encode("utf-8")


class NDJSONDecoder:
    """Incremental decoder for newline-delimited JSON.

    Bytes are fed as they arrive; complete lines are parsed and returned.
    Lines that are not JSON objects are dropped, since plugins commonly log
    to stdout. A single frame larger than ``max_frame_bytes`` is a protocol
    violation.
    """

    def __init__(self, max_frame_bytes: int):
        self.max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._buffer.extend(chunk)
        frames: list[dict[str, Any]] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
        if len(self._buffer) > self.max_frame_bytes:
            raise ProtocolComplianceError(
                f"Plugin sent a frame larger than {self.max_frame_bytes} bytes",
                {"max_frame_bytes": self.max_frame_bytes},
            )
        return frames

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left after EOF as a final, unterminated frame."""
        line = bytes(self._buffer)
        self._buffer.clear()
        frame = self._parse_line(line)
        return [frame] if frame is not None else []

    def _parse_line(self, line: bytes) -> dict[str, Any] | None:
        line = line.strip()
        if not line:
            return None
        if len(line) > self.max_frame_bytes:
            raise ProtocolComplianceError(
                f"Plugin sent a frame larger than {self.max_frame_bytes} bytes",
                {"max_frame_bytes": self.max_frame_bytes},
            )
        try:
            frame = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            self.skipped_lines += 1
            return None
        if not isinstance(frame, dict):
            self.skipped_lines += 1
            return None
        return frame


def match_response(frame: dict[str, Any], request_id: str) -> dict[str, Any] | None:
    """Return ``frame`` if it is the response to ``request_id``."""
    if frame.get("id") != request_id:
        return None
    if "result" not in frame and "error" not in frame:
        return None
    return frame


def _truncate(text: Any) -> str:
    text = str(text)
    return text if len(text) <= MAX_ERROR_TEXT else text[:MAX_ERROR_TEXT] + "..."


def parse_tools_result(response: dict[str, Any]) -> list[ToolInfo]:
    """Turn a ``tools/list`` response into tools, or raise ``ProtocolComplianceError``."""
    if response.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolComplianceError("Response is missing jsonrpc '2.0'")

    if "error" in response:
        error = response["error"]
        message = error.get("message") if isinstance(error, dict) else error
        raise ProtocolComplianceError(
            f"Plugin returned an error for tools/list: {_truncate(message)}",
            {"code": error.get("code") if isinstance(error, dict) else None},
        )

    result = response.get("result")
    if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
        raise ProtocolComplianceError("tools/list result must be an object with a 'tools' array")

    tools: list[ToolInfo] = []
    for index, raw in enumerate(result["tools"]):
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str) or not raw["name"].strip():
            raise ProtocolComplianceError(f"Tool #{index} has no name")
        schema = raw.get("inputSchema")
        if schema is not None and not isinstance(schema, dict):
            raise ProtocolComplianceError(f"Tool '{_truncate(raw['name'])}' has a non-object inputSchema")
        description = raw.get("description")
        tools.append(
            ToolInfo(
                name=raw["name"],
                description=description if isinstance(description, str) else None,
                input_schema=schema if schema is not None else {"type": "object"},
            )
        )
    return tools


async def request_tools(
    writer: asyncio.StreamWriter,
    reader: asyncio.StreamReader,
    *,
    timeout: float,
    max_frame_bytes: int,
    max_stdout_bytes: int,
) -> list[ToolInfo]:
    """Send one ``tools/list`` request and wait for the matching response.

    Raises:
        ProtocolTimeoutError: No matching response before ``timeout`` seconds.
        ProtocolComplianceError: The plugin exited first, answered with an
            error, or sent something the protocol does not allow.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    request_id = new_request_id()

    try:
        writer.write(encode_request(request_id, LIST_TOOLS_METHOD))
        await asyncio.wait_for(writer.drain(), timeout=timeout)
    except asyncio.TimeoutError:
        raise ProtocolTimeoutError(timeout) from None
    except (BrokenPipeError, ConnectionResetError) as e:
        # The plugin may already be gone; reading will surface EOF
        logger.debug("Writing tools/list request failed: %s", type(e).__name__)

    decoder = NDJSONDecoder(max_frame_bytes)
    total_bytes = 0
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise ProtocolTimeoutError(timeout)
        try:
            chunk = await asyncio.wait_for(reader.read(READ_CHUNK_BYTES), timeout=remaining)
        except asyncio.TimeoutError:
            raise ProtocolTimeoutError(timeout) from None

        if not chunk:
            for frame in decoder.flush():
                response = match_response(frame, request_id)
                if response is not None:
                    return parse_tools_result(response)
            raise ProtocolComplianceError(
                "Plugin exited before answering tools/list",
                {"skipped_lines": decoder.skipped_lines},
            )

        total_bytes += len(chunk)
        if total_bytes > max_stdout_bytes:
            raise ProtocolComplianceError(
                f"Plugin wrote more than {max_stdout_bytes} bytes without answering",
                {"max_stdout_bytes": max_stdout_bytes},
            )

        for frame in decoder.feed(chunk):
            response = match_response(frame, request_id)
            if response is not None:
                return parse_tools_result(response)
