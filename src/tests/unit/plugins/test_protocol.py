"""
Tests for the NDJSON JSON-RPC codec used for the tools/list handshake.
"""

import asyncio
import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from mcpgate.core.exceptions import ProtocolComplianceError, ProtocolTimeoutError
from mcpgate.plugins.protocol import (
    LIST_TOOLS_METHOD,
    NDJSONDecoder,
    encode_request,
    match_response,
    parse_tools_result,
    request_tools,
)

TOOLS = [
    {"name": "search", "description": "Search things", "inputSchema": {"type": "object"}},
    {"name": "fetch"},
]


class ScriptedWriter:
    """Writer that answers each request by feeding lines into a reader."""

    def __init__(self, reader: asyncio.StreamReader, respond):
        self.reader = reader
        self.respond = respond
        self.written = b""

    def write(self, data: bytes) -> None:
        self.written += data
        request = json.loads(data)
        for line in self.respond(request):
            self.reader.feed_data(line)

    async def drain(self) -> None:
        return None


def _line(message) -> bytes:
    return (json.dumps(message) + "\n").encode()


def _ok(request):
    return [_line({"jsonrpc": "2.0", "id": request["id"], "result": {"tools": TOOLS}})]


class TestEncoding:
    def test_request_is_one_newline_terminated_frame(self):
        raw = encode_request("abc", LIST_TOOLS_METHOD)

        assert raw.endswith(b"\n")
        assert raw.count(b"\n") == 1
        frame = json.loads(raw)
        assert frame == {"jsonrpc": "2.0", "id": "abc", "method": "tools/list", "params": {}}


class TestDecoder:
    def test_frames_split_across_chunks(self):
        decoder = NDJSONDecoder(max_frame_bytes=1024)

        assert decoder.feed(b'{"a": 1}\n{"b"') == [{"a": 1}]
        assert decoder.feed(b": 2}\n") == [{"b": 2}]

    def test_log_lines_and_non_objects_are_skipped(self):
        decoder = NDJSONDecoder(max_frame_bytes=1024)

        frames = decoder.feed(b"server starting...\n[1, 2]\n\n{\"ok\": true}\n")

        assert frames == [{"ok": True}]
        assert decoder.skipped_lines == 2

    def test_oversize_partial_frame_is_rejected(self):
        decoder = NDJSONDecoder(max_frame_bytes=16)

        with pytest.raises(ProtocolComplianceError):
            decoder.feed(b'{"padding": "' + b"x" * 64)

    def test_flush_parses_unterminated_last_frame(self):
        decoder = NDJSONDecoder(max_frame_bytes=1024)
        decoder.feed(b'{"last": 1}')

        assert decoder.flush() == [{"last": 1}]

    @given(
        messages=st.lists(st.dictionaries(st.text(max_size=5), st.integers(), max_size=3), max_size=6),
        cuts=st.lists(st.integers(min_value=0, max_value=400), max_size=8),
    )
    @settings(max_examples=50)
    def test_chunking_does_not_change_decoded_frames(self, messages, cuts):
        stream = b"".join(_line(m) for m in messages)
        points = sorted({min(c, len(stream)) for c in cuts})
        chunks = [stream[a:b] for a, b in zip([0, *points], [*points, len(stream)])]

        decoder = NDJSONDecoder(max_frame_bytes=4096)
        decoded = []
        for chunk in chunks:
            decoded.extend(decoder.feed(chunk))

        assert decoded == messages


class TestParseToolsResult:
    def test_tools_get_default_input_schema(self):
        tools = parse_tools_result({"jsonrpc": "2.0", "id": "1", "result": {"tools": TOOLS}})

        assert [t.name for t in tools] == ["search", "fetch"]
        assert tools[1].input_schema == {"type": "object"}
        assert tools[0].description == "Search things"

    def test_error_response_is_a_compliance_failure(self):
        response = {"jsonrpc": "2.0", "id": "1", "error": {"code": -32601, "message": "Method not found"}}

        with pytest.raises(ProtocolComplianceError, match="Method not found"):
            parse_tools_result(response)

    def test_missing_jsonrpc_version_is_rejected(self):
        with pytest.raises(ProtocolComplianceError):
            parse_tools_result({"id": "1", "result": {"tools": TOOLS}})

    @pytest.mark.parametrize(
        "result",
        [
            {},
            {"tools": "search"},
            {"tools": [{"description": "nameless"}]},
            {"tools": [{"name": "x", "inputSchema": "string"}]},
        ],
    )
    def test_malformed_results_are_rejected(self, result):
        with pytest.raises(ProtocolComplianceError):
            parse_tools_result({"jsonrpc": "2.0", "id": "1", "result": result})

    def test_match_response_ignores_notifications_and_other_ids(self):
        assert match_response({"jsonrpc": "2.0", "method": "log"}, "1") is None
        assert match_response({"jsonrpc": "2.0", "id": "2", "result": {}}, "1") is None
        assert match_response({"jsonrpc": "2.0", "id": "1", "result": {}}, "1") is not None


class TestRequestTools:
    @pytest.mark.asyncio
    async def test_matching_response_returns_tools(self):
        reader = asyncio.StreamReader()
        writer = ScriptedWriter(reader, _ok)

        tools = await request_tools(writer, reader, timeout=1.0, max_frame_bytes=4096, max_stdout_bytes=65536)

        assert [t.name for t in tools] == ["search", "fetch"]
        assert json.loads(writer.written)["method"] == "tools/list"

    @pytest.mark.asyncio
    async def test_noise_before_the_response_is_tolerated(self):
        def noisy(request):
            return [
                b"booting\n",
                _line({"jsonrpc": "2.0", "method": "notifications/message"}),
                _line({"jsonrpc": "2.0", "id": "other", "result": {"tools": []}}),
                *_ok(request),
            ]

        reader = asyncio.StreamReader()
        tools = await request_tools(
            ScriptedWriter(reader, noisy), reader, timeout=1.0, max_frame_bytes=4096, max_stdout_bytes=65536
        )

        assert len(tools) == 2

    @pytest.mark.asyncio
    async def test_eof_before_answer_is_a_compliance_failure(self):
        reader = asyncio.StreamReader()

        def exit_without_answer(request):
            reader.feed_eof()
            return []

        with pytest.raises(ProtocolComplianceError, match="exited"):
            await request_tools(
                ScriptedWriter(reader, exit_without_answer),
                reader,
                timeout=1.0,
                max_frame_bytes=4096,
                max_stdout_bytes=65536,
            )

    @pytest.mark.asyncio
    async def test_silence_times_out(self):
        reader = asyncio.StreamReader()

        with pytest.raises(ProtocolTimeoutError):
            await request_tools(
                ScriptedWriter(reader, lambda request: []),
                reader,
                timeout=0.2,
                max_frame_bytes=4096,
                max_stdout_bytes=65536,
            )

    @pytest.mark.asyncio
    async def test_unbounded_chatter_is_cut_off(self):
        reader = asyncio.StreamReader()
        chatter = [b"log line that never ends\n" * 40]

        with pytest.raises(ProtocolComplianceError, match="more than"):
            await request_tools(
                ScriptedWriter(reader, lambda request: chatter),
                reader,
                timeout=1.0,
                max_frame_bytes=4096,
                max_stdout_bytes=256,
            )
