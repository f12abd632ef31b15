import json
import random
import unittest

from .sse import (
    Ignored,
    SSEFrameParser,
    TextDelta,
    UpstreamError,
    parse_event,
)


def frame(payload, event=None) -> str:
    lines = []
    if event is not None:
        lines.append(f"event: {event}")
    if not isinstance(payload, str):
        payload = json.dumps(payload, ensure_ascii=False)
    lines.append("data: " + payload)
    return "\n".join(lines) + "\n\n"


def delta(text):
    return frame(
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        event="content_block_delta",
    )


UPSTREAM_STREAM = "".join(
    [
        frame({"type": "message_start", "message": {"id": "msg_1"}}, event="message_start"),
        frame({"type": "content_block_start", "index": 0}, event="content_block_start"),
        frame({"type": "ping"}, event="ping"),
        delta("Hi"),
        delta(" there, "),
        delta("naïve café ✓ \U0001F600"),
        delta("日本語のテキスト"),
        frame({"type": "error", "error": {"type": "overloaded_error", "message": "secret"}}),
        delta("!"),
        frame({"type": "message_stop"}, event="message_stop"),
        frame("[DONE]"),
    ]
).encode("utf-8")

EXPECTED_EVENTS = [
    TextDelta("Hi"),
    TextDelta(" there, "),
    TextDelta("naïve café ✓ \U0001F600"),
    TextDelta("日本語のテキスト"),
    UpstreamError(),
    TextDelta("!"),
]


def meaningful(events):
    return [event for event in events if not isinstance(event, Ignored)]


def parse_chunks(chunks):
    parser = SSEFrameParser()
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.close())
    return events


def split_at(data: bytes, offsets):
    bounds = [0, *sorted(offsets), len(data)]
    return [data[start:end] for start, end in zip(bounds, bounds[1:])]


class TestParseEvent(unittest.TestCase):
    def test_text_delta(self):
        self.assertEqual(
            parse_event({"type": "content_block_delta", "delta": {"text": "hey"}}),
            TextDelta("hey"),
        )

    def test_error_carries_no_detail(self):
        event = parse_event({"type": "error", "error": {"message": "internal detail"}})
        self.assertEqual(event, UpstreamError())
        self.assertNotIn("internal detail", repr(event))

    def test_everything_else_is_ignored(self):
        for payload in [
            {"type": "message_stop"},
            {"type": "content_block_delta", "delta": {"type": "input_json_delta"}},
            {"type": "content_block_delta", "delta": {"text": 5}},
            {"type": "content_block_delta", "delta": {"text": ""}},
            {"type": "content_block_delta", "delta": "text"},
            {"type": "brand_new_event"},
            {"no": "type"},
            [1, 2, 3],
            "string",
            None,
        ]:
            with self.subTest(payload=payload):
                self.assertIsInstance(parse_event(payload), Ignored)


class TestSSEFrameParser(unittest.TestCase):
    def test_whole_stream(self):
        events = parse_chunks([UPSTREAM_STREAM])
        self.assertListEqual(meaningful(events), EXPECTED_EVENTS)
        self.assertIn(Ignored("message_start"), events)

    def test_every_single_split_point(self):
        for offset in range(1, len(UPSTREAM_STREAM)):
            with self.subTest(offset=offset):
                events = parse_chunks(split_at(UPSTREAM_STREAM, [offset]))
                self.assertListEqual(meaningful(events), EXPECTED_EVENTS)

    def test_byte_at_a_time(self):
        chunks = [UPSTREAM_STREAM[i:i + 1] for i in range(len(UPSTREAM_STREAM))]
        self.assertListEqual(meaningful(parse_chunks(chunks)), EXPECTED_EVENTS)

    def test_random_splits(self):
        rng = random.Random(1337)
        for _ in range(200):
            offsets = rng.sample(range(1, len(UPSTREAM_STREAM)), rng.randint(1, 40))
            events = parse_chunks(split_at(UPSTREAM_STREAM, offsets))
            self.assertListEqual(meaningful(events), EXPECTED_EVENTS)

    def test_split_inside_multibyte_character(self):
        data = delta("\U0001F600").encode("utf-8")
        start = data.index("\U0001F600".encode("utf-8"))
        parser = SSEFrameParser()
        self.assertEqual(parser.feed(data[: start + 1]), [])
        self.assertEqual(parser.feed(data[start + 1 : start + 3]), [])
        self.assertEqual(parser.feed(data[start + 3 :]), [TextDelta("\U0001F600")])

    def test_nothing_emitted_before_delimiter(self):
        parser = SSEFrameParser()
        self.assertEqual(parser.feed(delta("Hi").rstrip("\n").encode()), [])
        self.assertEqual(parser.feed(b"\n"), [])
        self.assertEqual(parser.feed(b"\n"), [TextDelta("Hi")])

    def test_malformed_line_does_not_suppress_neighbours(self):
        data = (delta("one") + frame('{"type": "content_block_delta", "delta": {') + delta("two"))
        self.assertListEqual(
            meaningful(parse_chunks([data.encode()])), [TextDelta("one"), TextDelta("two")]
        )

    def test_malformed_line_inside_multi_data_frame(self):
        data = (
            'data: {"type": "content_block_delta", "delta": {"text": "a"}}\n'
            "data: {not json\n"
            'data: {"type": "content_block_delta", "delta": {"text": "b"}}\n'
            "\n"
        )
        self.assertListEqual(
            parse_chunks([data.encode()]), [TextDelta("a"), TextDelta("b")]
        )

    def test_empty_and_done_payloads_are_discarded(self):
        data = "data: \n\ndata: [DONE]\n\n: keep-alive comment\n\nevent: ping\n\n"
        self.assertListEqual(parse_chunks([data.encode()]), [])

    def test_crlf_line_endings(self):
        data = delta("Hi").replace("\n", "\r\n").encode()
        for offset in range(1, len(data)):
            with self.subTest(offset=offset):
                self.assertListEqual(parse_chunks(split_at(data, [offset])), [TextDelta("Hi")])

    def test_incomplete_trailing_frame_is_discarded(self):
        data = delta("kept") + 'data: {"type": "content_block_delta", "delta": {"text": "lost"}}\n'
        self.assertListEqual(parse_chunks([data.encode()]), [TextDelta("kept")])

    def test_truncated_multibyte_at_end_of_stream(self):
        data = delta("ok").encode() + "\U0001F600".encode()[:2]
        self.assertListEqual(parse_chunks([data]), [TextDelta("ok")])
