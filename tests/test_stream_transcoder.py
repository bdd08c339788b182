import asyncio
import json
import unittest

import httpx

from uaproxy.core.stream_transcoder import (
    DONE_SENTINEL,
    ChatCompletionFramer,
    ContentDelta,
    Done,
    LineProtocolDecoder,
    MessageMeta,
    ReasoningDelta,
    collect_completion,
    decode_delta,
    iter_stream_events,
    parse_line,
    stream_sse,
)

SAMPLE_STREAM = b'0:"Hello"\n0:" world"\ne:done\n'


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


def _collect_events(*parts: bytes):
    async def run():
        return [event async for event in iter_stream_events(_chunks(*parts))]
    return asyncio.run(run())


def _collect_sse(*parts: bytes, model: str = "test-model"):
    async def run():
        framer = ChatCompletionFramer(model)
        return [line async for line in stream_sse(iter_stream_events(_chunks(*parts)), framer)]
    return asyncio.run(run())


def _payloads(lines):
    payloads = []
    for line in lines:
        if line == DONE_SENTINEL:
            continue
        assert line.startswith("data: ") and line.endswith("\n\n")
        payloads.append(json.loads(line[len("data: "):]))
    return payloads


class LineParsingTests(unittest.TestCase):
    def test_known_keys_map_to_events(self) -> None:
        self.assertEqual(parse_line('0:"hi"'), ContentDelta("hi"))
        self.assertEqual(parse_line('g:"thinking"'), ReasoningDelta("thinking"))
        self.assertEqual(parse_line('e:{"finishReason":"stop"}'), Done())
        self.assertEqual(parse_line('d:{"finishReason":"stop"}'), Done())
        self.assertEqual(parse_line('f:{"messageId":"msg-7"}'), MessageMeta("msg-7"))

    def test_unknown_keys_and_malformed_lines_are_ignored(self) -> None:
        self.assertIsNone(parse_line('8:[{"annotation":1}]'))
        self.assertIsNone(parse_line('no colon here'))
        self.assertIsNone(parse_line('0:'))
        self.assertIsNone(parse_line('Bad Key:"x"'))
        self.assertIsNone(parse_line('f:not-json'))
        self.assertIsNone(parse_line('f:{"other":1}'))

    def test_escaped_newlines_are_unescaped(self) -> None:
        self.assertEqual(decode_delta('"line1\\nline2"'), "line1\nline2")

    def test_invalid_json_string_falls_back_to_quote_stripping(self) -> None:
        self.assertEqual(decode_delta('"bad \\x escape\\n"'), "bad \\x escape\n")

    def test_unquoted_values_are_kept(self) -> None:
        self.assertEqual(decode_delta("plain"), "plain")


class DecoderTests(unittest.TestCase):
    def test_events_are_independent_of_chunk_boundaries(self) -> None:
        data = (
            'f:{"messageId":"msg-1"}\r\n'
            'g:"plan étape"\n'
            '0:"héllo \U0001F30D"\n'
            '\n'
            '9:ignored\n'
            '0:" done"\n'
            'e:{"finishReason":"stop"}\n'
        ).encode("utf-8")

        whole = _collect_events(data)
        single_bytes = _collect_events(*[data[i:i + 1] for i in range(len(data))])

        self.assertEqual(whole, single_bytes)
        self.assertEqual(
            whole,
            [
                MessageMeta("msg-1"),
                ReasoningDelta("plan étape"),
                ContentDelta("héllo \U0001F30D"),
                ContentDelta(" done"),
                Done(),
            ],
        )

    def test_line_split_at_chunk_boundary(self) -> None:
        events = _collect_events(b'0:"Hel', b'lo"\n0:"!"', b'\ne:x\n')

        self.assertEqual(events, [ContentDelta("Hello"), ContentDelta("!"), Done()])

    def test_input_after_terminal_marker_is_not_read(self) -> None:
        events = _collect_events(b'0:"a"\nd:{}\n0:"late"\n')

        self.assertEqual(events, [ContentDelta("a"), Done()])

    def test_end_of_stream_flushes_last_line_and_synthesizes_done(self) -> None:
        events = _collect_events(b'0:"a"\n0:"b"')

        self.assertEqual(events, [ContentDelta("a"), ContentDelta("b"), Done()])

    def test_feed_after_finish_returns_nothing(self) -> None:
        decoder = LineProtocolDecoder()

        self.assertEqual(decoder.feed(b"e:{}\n"), [Done()])
        self.assertTrue(decoder.finished)
        self.assertEqual(decoder.feed(b'0:"x"\n'), [])
        self.assertEqual(decoder.flush(), [])


class StreamingOutputTests(unittest.TestCase):
    def test_sample_stream_produces_two_deltas_stop_and_done(self) -> None:
        lines = _collect_sse(SAMPLE_STREAM)

        self.assertEqual(len(lines), 4)
        self.assertEqual(lines[-1], DONE_SENTINEL)
        payloads = _payloads(lines)
        self.assertEqual([p["choices"][0]["delta"].get("content") for p in payloads[:2]], ["Hello", " world"])
        self.assertEqual(payloads[0]["choices"][0]["delta"]["role"], "assistant")
        self.assertNotIn("role", payloads[1]["choices"][0]["delta"])
        self.assertEqual(payloads[2]["choices"][0]["finish_reason"], "stop")
        self.assertEqual(payloads[2]["choices"][0]["delta"], {})
        for payload in payloads:
            self.assertEqual(payload["object"], "chat.completion.chunk")
            self.assertEqual(payload["model"], "test-model")

    def test_reasoning_uses_reasoning_content_field(self) -> None:
        payloads = _payloads(_collect_sse(b'g:"hmm"\n0:"ok"\ne:{}\n'))

        self.assertEqual(payloads[0]["choices"][0]["delta"]["reasoning_content"], "hmm")
        self.assertEqual(payloads[1]["choices"][0]["delta"]["content"], "ok")

    def test_metadata_rekeys_chunk_ids(self) -> None:
        payloads = _payloads(_collect_sse(b'0:"a"\nf:{"messageId":"msg-9"}\n0:"b"\ne:{}\n'))

        self.assertTrue(payloads[0]["id"].startswith("chatcmpl-"))
        self.assertEqual(payloads[1]["id"], "msg-9")
        self.assertEqual(payloads[2]["id"], "msg-9")

    def test_interrupted_upstream_ends_stream_cleanly(self) -> None:
        async def broken():
            yield b'0:"partial"\n'
            raise httpx.ReadError("connection reset")

        async def run():
            framer = ChatCompletionFramer("m")
            return [line async for line in stream_sse(iter_stream_events(broken()), framer)]

        lines = asyncio.run(run())

        self.assertEqual(lines[-1], DONE_SENTINEL)
        payloads = _payloads(lines)
        self.assertEqual(payloads[0]["choices"][0]["delta"]["content"], "partial")
        self.assertEqual(payloads[-1]["error"]["message"], "Stream interrupted")


class NonStreamingOutputTests(unittest.TestCase):
    def test_sample_stream_accumulates_into_one_completion(self) -> None:
        async def run():
            framer = ChatCompletionFramer("test-model")
            return await collect_completion(iter_stream_events(_chunks(SAMPLE_STREAM)), framer)

        completion = asyncio.run(run())

        self.assertEqual(completion["object"], "chat.completion")
        self.assertEqual(completion["choices"][0]["message"], {"role": "assistant", "content": "Hello world"})
        self.assertEqual(completion["choices"][0]["finish_reason"], "stop")

    def test_reasoning_is_accumulated_separately(self) -> None:
        async def run():
            framer = ChatCompletionFramer("m")
            stream = _chunks(b'g:"step 1 "\ng:"step 2"\n0:"answer"\n')
            return await collect_completion(iter_stream_events(stream), framer)

        completion = asyncio.run(run())

        message = completion["choices"][0]["message"]
        self.assertEqual(message["content"], "answer")
        self.assertEqual(message["reasoning_content"], "step 1 step 2")


if __name__ == "__main__":
    unittest.main()
