"""SSE accumulation and the HTTP streaming providers (httpx.MockTransport)."""
import json
import os
import unittest
from typing import Callable, List
from unittest.mock import patch

import httpx

from agent_relay.domain.errors import ProviderHttpError, StreamProtocolError
from agent_relay.domain.invocations import Attachment, InvocationRequest
from agent_relay.providers.anthropic_api import (
    ANTHROPIC_API_URL,
    MAX_INLINE_TEXT_CHARS,
    AnthropicApiStreamer,
    build_attachment_blocks,
    resolve_model,
    stream_anthropic_api,
)
from agent_relay.providers.openclaw import (
    OpenClawConfig,
    OpenClawDiscoveryError,
    OpenClawProvider,
    discover_openclaw,
    resolve_openclaw_config,
    stream_openclaw,
)
from agent_relay.providers.sse import SseLineBuffer, decode_json_payload, is_done_sentinel, parse_data_line


class _Chunks(httpx.AsyncByteStream):
    def __init__(self, chunks: List[bytes], fail_with: Exception = None):
        self._chunks = chunks
        self._fail_with = fail_with

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._fail_with is not None:
            raise self._fail_with

    async def aclose(self) -> None:
        return None


def _sse(*events) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode("utf-8")


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _collect(agen) -> List[str]:
    out = []
    async for item in agen:
        out.append(item)
    return out


class TestSseLineBuffer(unittest.TestCase):
    def test_split_across_chunks(self):
        buf = SseLineBuffer()
        self.assertEqual(buf.append(b'data: {"a"'), [])
        self.assertEqual(buf.append(b':1}\r\ndata: [DO'), ['data: {"a":1}'])
        self.assertEqual(buf.remainder, b"data: [DO")
        self.assertEqual(buf.append(b"NE]\n"), ["data: [DONE]"])
        self.assertEqual(buf.remainder, b"")

    def test_multibyte_character_split(self):
        encoded = "data: héllo\n".encode("utf-8")
        split_at = encoded.index(b"\xc3") + 1
        buf = SseLineBuffer()
        self.assertEqual(buf.append(encoded[:split_at]), [])
        self.assertEqual(buf.append(encoded[split_at:]), ["data: héllo"])

    def test_every_split_point_gives_same_lines(self):
        raw = b"data: one\r\n\ndata: two\n: comment\ndata: [DONE]\n"
        expected = ["data: one", "", "data: two", ": comment", "data: [DONE]"]
        for i in range(len(raw) + 1):
            buf = SseLineBuffer()
            self.assertEqual(buf.append(raw[:i]) + buf.append(raw[i:]), expected)

    def test_finish_returns_unterminated_tail(self):
        buf = SseLineBuffer()
        buf.append(b"data: tail")
        self.assertEqual(buf.finish(), "data: tail")
        self.assertIsNone(buf.finish())

    def test_data_line_parsing(self):
        self.assertEqual(parse_data_line("data: {}"), "{}")
        self.assertEqual(parse_data_line("data:{}"), "{}")
        self.assertIsNone(parse_data_line("event: ping"))
        self.assertTrue(is_done_sentinel(" [DONE] "))

    def test_malformed_payload_is_protocol_error(self):
        with self.assertRaises(StreamProtocolError):
            decode_json_payload("{not json")
        with self.assertRaises(StreamProtocolError):
            decode_json_payload("[1, 2]")


class TestAnthropicApiStreamer(unittest.IsolatedAsyncioTestCase):
    async def test_streams_deltas_until_message_stop(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            body = _sse(
                {"type": "message_start", "message": {}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
                {"type": "message_stop"},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "ignored"}},
            )
            return httpx.Response(200, stream=_Chunks([body[:37], body[37:]]))

        async with _client(handler) as client:
            streamer = AnthropicApiStreamer(api_key="sk-ant-test", model="m-1", client=client)
            request = InvocationRequest(prompt="hi", system_prompt="be brief")
            chunks = await _collect(streamer.stream(request))

        self.assertEqual(chunks, ["Hel", "lo"])
        self.assertEqual(seen["url"], ANTHROPIC_API_URL)
        self.assertEqual(seen["headers"]["x-api-key"], "sk-ant-test")
        self.assertIn("anthropic-version", seen["headers"])
        body = seen["body"]
        self.assertEqual(body["model"], "m-1")
        self.assertTrue(body["stream"])
        self.assertEqual(body["system"], "be brief")
        self.assertEqual(body["messages"], [{"role": "user", "content": [{"type": "text", "text": "hi"}]}])

    async def test_stream_without_sentinel_completes(self):
        def handler(request):
            return httpx.Response(200, stream=_Chunks([_sse({"type": "content_block_delta", "delta": {"text": "x"}})]))

        async with _client(handler) as client:
            chunks = await _collect(stream_anthropic_api(InvocationRequest(prompt="p"), "k", client=client))
        self.assertEqual(chunks, ["x"])

    async def test_no_system_key_without_system_prompt(self):
        streamer = AnthropicApiStreamer("k", model="m")
        self.assertNotIn("system", streamer.build_body([{"type": "text", "text": "p"}]))

    async def test_model_resolution(self):
        with patch.dict(os.environ, {"ANTHROPIC_MODEL": "env-model"}):
            self.assertEqual(resolve_model("explicit"), "explicit")
            self.assertEqual(resolve_model(None), "env-model")
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ANTHROPIC_MODEL", None)
            self.assertEqual(resolve_model(""), "claude-sonnet-4-20250514")

    async def test_status_errors_have_distinct_messages(self):
        cases = {
            401: "Invalid Anthropic API key",
            429: "rate limit exceeded",
            500: "Anthropic API returned 500",
        }
        for status, expected in cases.items():
            async with _client(lambda request, s=status: httpx.Response(s, text="boom")) as client:
                with self.assertRaises(ProviderHttpError) as ctx:
                    await _collect(AnthropicApiStreamer("k", client=client).stream(InvocationRequest(prompt="p")))
            self.assertIn(expected, str(ctx.exception))
            self.assertEqual(ctx.exception.status_code, status)

    async def test_bad_request_surfaces_api_message(self):
        def handler(request):
            return httpx.Response(400, json={"type": "error", "error": {"message": "max_tokens too large"}})

        async with _client(handler) as client:
            with self.assertRaises(ProviderHttpError) as ctx:
                await _collect(AnthropicApiStreamer("k", client=client).stream(InvocationRequest(prompt="p")))
        self.assertIn("max_tokens too large", str(ctx.exception))

    async def test_error_event_is_fatal(self):
        def handler(request):
            body = _sse(
                {"type": "content_block_delta", "delta": {"text": "partial"}},
                {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            )
            return httpx.Response(200, stream=_Chunks([body]))

        chunks = []
        async with _client(handler) as client:
            with self.assertRaises(StreamProtocolError) as ctx:
                async for text in AnthropicApiStreamer("k", client=client).stream(InvocationRequest(prompt="p")):
                    chunks.append(text)
        self.assertEqual(chunks, ["partial"])
        self.assertEqual(str(ctx.exception), "Overloaded")

    async def test_malformed_json_is_fatal(self):
        def handler(request):
            return httpx.Response(200, stream=_Chunks([b"data: {oops\n\n"]))

        async with _client(handler) as client:
            with self.assertRaises(StreamProtocolError):
                await _collect(AnthropicApiStreamer("k", client=client).stream(InvocationRequest(prompt="p")))

    async def test_connect_error_maps_to_provider_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with self.assertRaises(ProviderHttpError) as ctx:
                await _collect(AnthropicApiStreamer("k", client=client).stream(InvocationRequest(prompt="p")))
        self.assertIn("Cannot connect to Anthropic API", str(ctx.exception))

    async def test_read_error_mid_stream(self):
        def handler(request):
            first = _sse({"type": "content_block_delta", "delta": {"text": "a"}})
            return httpx.Response(200, stream=_Chunks([first], fail_with=httpx.ReadError("reset")))

        async with _client(handler) as client:
            with self.assertRaises(StreamProtocolError) as ctx:
                await _collect(AnthropicApiStreamer("k", client=client).stream(InvocationRequest(prompt="p")))
        self.assertIn("Stream read error", str(ctx.exception))

    async def test_missing_key_fails_before_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        async with _client(handler) as client:
            with self.assertRaises(ProviderHttpError):
                await _collect(AnthropicApiStreamer("", client=client).stream(InvocationRequest(prompt="p")))


class TestAttachmentBlocks(unittest.IsolatedAsyncioTestCase):
    async def test_block_types(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/notes.md":
                return httpx.Response(200, text="# notes")
            if request.url.path == "/big.txt":
                return httpx.Response(200, text="x" * (MAX_INLINE_TEXT_CHARS + 10))
            return httpx.Response(404, text="missing")

        attachments = [
            Attachment("shot.png", "image/png", "https://files.test/shot.png", 10),
            Attachment("design.pdf", "application/pdf", "https://files.test/design.pdf", 20),
            Attachment("notes.md", "application/octet-stream", "https://files.test/notes.md", 7),
            Attachment("big.txt", "text/plain", "https://files.test/big.txt", 1),
            Attachment("gone.py", "text/x-python", "https://files.test/gone.py", 3),
            Attachment("blob.bin", "application/octet-stream", "https://files.test/blob.bin", 99),
        ]
        async with _client(handler) as client:
            blocks = await build_attachment_blocks(client, attachments)

        self.assertEqual(blocks[0], {"type": "image", "source": {"type": "url", "url": "https://files.test/shot.png"}})
        self.assertEqual(blocks[1]["type"], "document")
        self.assertEqual(blocks[2]["text"], "[File: notes.md]\n```\n# notes\n```")
        self.assertTrue(blocks[3]["text"].endswith("... (truncated)\n```"))
        self.assertIn("could not fetch content", blocks[4]["text"])
        self.assertIn("binary file", blocks[5]["text"])


class TestOpenClaw(unittest.IsolatedAsyncioTestCase):
    async def test_streams_choice_deltas_with_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            body = _sse(
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "Hi"}}]},
                {"choices": [{"delta": {"content": " there"}}]},
                "[DONE]",
            )
            return httpx.Response(200, stream=_Chunks([body]))

        async with _client(handler) as client:
            provider = OpenClawProvider(OpenClawConfig("http://localhost:18789", "tok"), client=client)
            chunks = await _collect(provider.stream("sys", "hello"))

        self.assertEqual(chunks, ["Hi", " there"])
        self.assertEqual(seen["url"], "http://localhost:18789/v1/chat/completions")
        self.assertEqual(seen["auth"], "Bearer tok")
        self.assertEqual(seen["body"]["model"], "default")
        self.assertEqual(
            seen["body"]["messages"],
            [{"role": "system", "content": "sys"}, {"role": "user", "content": "hello"}],
        )

    async def test_no_auth_header_without_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, stream=_Chunks([b"data: [DONE]\n"]))

        async with _client(handler) as client:
            chunks = await _collect(stream_openclaw(OpenClawConfig("http://gw"), "", "q", client=client))
        self.assertEqual(chunks, [])
        self.assertIsNone(seen["auth"])

    async def test_connect_error_has_start_hint(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with self.assertRaises(ProviderHttpError) as ctx:
                await _collect(OpenClawProvider(OpenClawConfig("http://localhost:1"), client=client).stream("", "q"))
        self.assertIn("openclaw gateway start", str(ctx.exception))

    async def test_unauthorized_and_rate_limited(self):
        for status, expected in ((401, "auth token"), (429, "rate limit")):
            async with _client(lambda request, s=status: httpx.Response(s, text="no")) as client:
                with self.assertRaises(ProviderHttpError) as ctx:
                    await _collect(OpenClawProvider(OpenClawConfig("http://gw"), client=client).stream("", "q"))
            self.assertIn(expected, str(ctx.exception))


class TestOpenClawDiscovery(unittest.TestCase):
    def setUp(self):
        import tempfile
        from pathlib import Path

        self._tmp = tempfile.TemporaryDirectory()
        self.home = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def _write(self, data) -> None:
        cfg_dir = self.home / ".openclaw"
        cfg_dir.mkdir()
        (cfg_dir / "openclaw.json").write_text(json.dumps(data), encoding="utf-8")

    def test_reads_port_and_token(self):
        self._write({"gateway": {"port": 19000, "auth": {"token": "abc"}}})
        self.assertEqual(discover_openclaw(self.home), OpenClawConfig("http://localhost:19000", "abc"))

    def test_default_port(self):
        self._write({"gateway": {}})
        self.assertEqual(discover_openclaw(self.home), OpenClawConfig("http://localhost:18789", ""))

    def test_missing_config(self):
        with self.assertRaises(OpenClawDiscoveryError):
            discover_openclaw(self.home)

    def test_explicit_settings_override_discovery(self):
        self._write({"gateway": {"port": 19000, "auth": {"token": "abc"}}})
        cfg = resolve_openclaw_config("http://remote:9/", "", home=self.home)
        self.assertEqual(cfg, OpenClawConfig("http://remote:9", "abc"))

    def test_explicit_url_without_local_config(self):
        self.assertEqual(resolve_openclaw_config("http://remote:9", "", home=self.home), OpenClawConfig("http://remote:9", ""))


if __name__ == "__main__":
    unittest.main()
