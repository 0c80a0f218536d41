import pytest

from gateway.sse import LineDecoder, aiter_lines, iter_lines


RAW = (
    'data: {"content_type":"thinking","content":"思考一下"}\n'
    "\n"
    ": keep-alive comment\n"
    'data:{"type":"answer","content_type":"text","content":"héllo"}\r\n'
    "event: message\n"
    'data: {"type":"answer","content":"done"}\n'
).encode("utf-8")

EXPECTED = [
    '{"content_type":"thinking","content":"思考一下"}',
    '{"type":"answer","content_type":"text","content":"héllo"}',
    '{"type":"answer","content":"done"}',
]


def test_filters_blank_and_non_data_lines():
    assert list(iter_lines([RAW])) == EXPECTED


def test_split_at_every_offset_matches_unsplit():
    for i in range(1, len(RAW)):
        assert list(iter_lines([RAW[:i], RAW[i:]])) == EXPECTED, f"split at {i}"


def test_byte_at_a_time_reassembles_multibyte_chars():
    chunks = [RAW[i:i + 1] for i in range(len(RAW))]
    assert list(iter_lines(chunks)) == EXPECTED


def test_unterminated_final_fragment_is_discarded():
    dec = LineDecoder()
    assert dec.feed(b'data: {"a":1}\ndata: {"b":') == ['{"a":1}']
    assert dec.tail == 'data: {"b":'
    dec.close()
    assert dec.tail == ""
    assert list(iter_lines([b'data: {"a":1}\ndata: {"b":2}'])) == ['{"a":1}']


def test_no_prefix_keeps_every_non_blank_line():
    lines = list(iter_lines([b'{"x":1}\n\n  \n{"y":2}\n'], prefix=None))
    assert lines == ['{"x":1}', '{"y":2}']


def test_clean_end_produces_nothing():
    assert list(iter_lines([])) == []
    assert list(iter_lines([b"\n\n"])) == []


@pytest.mark.asyncio
async def test_async_variant_matches_sync():
    async def chunks():
        for i in range(0, len(RAW), 7):
            yield RAW[i:i + 7]

    out = [line async for line in aiter_lines(chunks())]
    assert out == EXPECTED
