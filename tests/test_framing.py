import pytest

from notebooklm_rpc.exceptions import FramingError
from notebooklm_rpc.framing import FrameReader, dechunk, find_envelope, iter_frames, parse_envelopes

from conftest import envelope, frame_body


class TestFrameReader:

    def test_frames_come_back_in_order(self):
        body = frame_body([["wrb.fr", "A", "[1]"]], [["di", 10]])
        frames = dechunk(body)
        assert [f.json() for f in frames] == [[["wrb.fr", "A", "[1]"]], [["di", 10]]]
        assert frames[0].declared_length == len(frames[0].payload)

    def test_lengths_count_bytes_not_characters(self):
        body = frame_body(["héllo ✓"])
        [frame] = dechunk(body)
        assert frame.json() == ["héllo ✓"]
        assert frame.declared_length == len(frame.payload)

    def test_split_anywhere_gives_same_frames(self):
        body = frame_body([1, 2, 3], {"k": "v"}, ["x" * 50])
        expected = [f.json() for f in dechunk(body)]
        for size in (1, 2, 3, 7, 64):
            chunks = [body[i:i + size] for i in range(0, len(body), size)]
            assert [f.json() for f in iter_frames(chunks)] == expected

    def test_blank_lines_between_chunks_are_ignored(self):
        body = b")]}'\n\n3\n[1]\n\n\r\n3\n[2]\n"
        assert [f.json() for f in dechunk(body)] == [[1], [2]]

    def test_truncated_chunk(self):
        body = frame_body(["abcdef"])[:-4]
        with pytest.raises(FramingError, match="mid-chunk"):
            dechunk(body)

    def test_partial_length_line_at_end(self):
        with pytest.raises(FramingError, match="length line"):
            dechunk(b")]}'\n3\n[1]\n12")

    def test_non_numeric_length(self):
        with pytest.raises(FramingError, match="invalid chunk length") as exc:
            dechunk(b")]}'\nabc\n[1]\n")
        assert exc.value.offset == 5

    def test_negative_length_rejected(self):
        with pytest.raises(FramingError):
            dechunk(b")]}'\n-3\n[1]\n")

    def test_missing_preamble(self):
        with pytest.raises(FramingError, match="preamble"):
            dechunk(b"3\n[1]\n")

    def test_empty_stream(self):
        with pytest.raises(FramingError, match="preamble"):
            dechunk(b"")

    def test_preamble_only_is_an_empty_response(self):
        assert dechunk(b")]}'\n") == []

    def test_oversized_chunk_rejected_before_buffering(self):
        reader = FrameReader(max_frame_size=10)
        with pytest.raises(FramingError, match="exceeds limit"):
            reader.feed(b")]}'\n11\n")

    def test_invalid_json_payload(self):
        [frame] = dechunk(b")]}'\n3\n[1,\n")
        with pytest.raises(FramingError, match="not valid JSON"):
            frame.json()

    def test_feed_after_close(self):
        reader = FrameReader()
        reader.feed(b")]}'\n")
        reader.close()
        with pytest.raises(FramingError):
            reader.feed(b"3\n[1]")


class TestEnvelopes:

    def test_status_entries_are_skipped(self):
        body = frame_body([envelope("A", [1]), ["di", 12], ["af.httprm", 11, "x", 3], ["e", 4, None, None, 100]])
        [frame] = dechunk(body)
        envelopes = parse_envelopes(frame)
        assert len(envelopes) == 1
        assert envelopes[0].rpc_id == "A"
        assert envelopes[0].payload == [1]
        assert envelopes[0].error_code is None

    def test_error_code(self):
        [frame] = dechunk(frame_body([envelope("A", None, error=16)]))
        [env] = parse_envelopes(frame)
        assert env.error_code == 16
        assert env.payload is None

    def test_bare_string_payload(self):
        [frame] = dechunk(frame_body([["wrb.fr", "A", "not json", None, None, None, "generic"]]))
        assert parse_envelopes(frame)[0].payload == "not json"

    def test_find_by_position_tag(self):
        [frame] = dechunk(frame_body([envelope("A", ["first"], tag="1"), envelope("A", ["second"], tag="2")]))
        envelopes = parse_envelopes(frame)
        assert find_envelope(envelopes, "A", 2).payload == ["second"]
        assert find_envelope(envelopes, "A", 1).payload == ["first"]
        assert find_envelope(envelopes, "B") is None
