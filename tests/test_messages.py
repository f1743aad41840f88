import json
import unittest

from config import CONNECTED_SENTINEL, MAX_FILE_SIZE
from errors import MalformedMessageError, UnknownMessageTypeError
from protocol.messages import (
    Connected,
    FileChunk,
    FileMeta,
    PlainText,
    decode_message,
    encode_message,
)


class DecodeTests(unittest.TestCase):
    def test_sentinel(self):
        self.assertIsInstance(decode_message(CONNECTED_SENTINEL.encode()), Connected)

    def test_sentinel_requires_exact_match(self):
        message = decode_message(f" {CONNECTED_SENTINEL}")
        self.assertIsInstance(message, PlainText)

    def test_file_meta_wire_shape(self):
        raw = json.dumps({
            "type": "file-meta", "fileId": "1-abc", "name": "a.txt",
            "mime": "text/plain", "size": 10, "totalChunks": 1,
        })
        meta = decode_message(raw)
        self.assertIsInstance(meta, FileMeta)
        self.assertEqual(meta.file_id, "1-abc")
        self.assertEqual(meta.total_chunks, 1)

    def test_file_chunk_data_becomes_bytes(self):
        raw = json.dumps({"type": "file-chunk", "fileId": "x", "index": 0, "data": [0, 1, 255]})
        chunk = decode_message(raw.encode())
        self.assertIsInstance(chunk, FileChunk)
        self.assertEqual(chunk.data, b"\x00\x01\xff")

    def test_plain_text_variants(self):
        for text in ["hello", "", "42", "[1, 2]", '{"no": "type"}', "{broken json"]:
            with self.subTest(text=text):
                message = decode_message(text)
                self.assertIsInstance(message, PlainText)
                self.assertEqual(message.text, text)

    def test_invalid_utf8_is_plain_text(self):
        self.assertIsInstance(decode_message(b"\xff\xfe"), PlainText)

    def test_unknown_type_fails_explicitly(self):
        with self.assertRaises(UnknownMessageTypeError):
            decode_message('{"type": "chat", "text": "hi"}')

    def test_missing_fields_are_malformed(self):
        with self.assertRaises(MalformedMessageError) as ctx:
            decode_message('{"type": "file-meta", "fileId": "x"}')
        self.assertEqual(ctx.exception.file_id, "x")

    def test_bad_byte_values_are_malformed(self):
        for data in [[256], [-1], "abc", [1.5], [True]]:
            with self.subTest(data=data):
                raw = json.dumps({"type": "file-chunk", "fileId": "x", "index": 0, "data": data})
                with self.assertRaises(MalformedMessageError):
                    decode_message(raw)

    def test_deeply_nested_json_is_plain_text(self):
        text = "[" * 100000
        message = decode_message(text)
        self.assertIsInstance(message, PlainText)
        self.assertEqual(message.text, text)

    def test_chunk_count_must_match_size(self):
        raw = json.dumps({
            "type": "file-meta", "fileId": "big", "name": "n",
            "mime": "m", "size": 1, "totalChunks": 50000000,
        })
        with self.assertRaises(MalformedMessageError) as ctx:
            decode_message(raw)
        self.assertEqual(ctx.exception.file_id, "big")

    def test_size_above_limit_is_malformed(self):
        size = MAX_FILE_SIZE + 1
        raw = json.dumps({
            "type": "file-meta", "fileId": "huge", "name": "n", "mime": "m",
            "size": size, "totalChunks": -(-size // 65536),
        })
        with self.assertRaises(MalformedMessageError):
            decode_message(raw)

    def test_multi_chunk_meta_is_accepted(self):
        meta = decode_message(json.dumps({
            "type": "file-meta", "fileId": "f", "name": "n", "mime": "m",
            "size": 150000, "totalChunks": 3,
        }))
        self.assertIsInstance(meta, FileMeta)
        self.assertEqual(meta.total_chunks, 3)


class EncodeTests(unittest.TestCase):
    def test_meta_uses_camel_case(self):
        meta = FileMeta(file_id="f", name="n", mime="m", size=3, total_chunks=1)
        wire = json.loads(encode_message(meta))
        self.assertEqual(wire, {
            "type": "file-meta", "fileId": "f", "name": "n",
            "mime": "m", "size": 3, "totalChunks": 1,
        })

    def test_chunk_data_is_numeric_array(self):
        chunk = FileChunk(file_id="f", index=2, data=b"\x00\x7f")
        wire = json.loads(encode_message(chunk))
        self.assertEqual(wire, {"type": "file-chunk", "fileId": "f", "index": 2, "data": [0, 127]})

    def test_sentinel_and_text(self):
        self.assertEqual(encode_message(Connected()), CONNECTED_SENTINEL.encode())
        self.assertEqual(encode_message(PlainText(text="héllo")), "héllo".encode())


if __name__ == "__main__":
    unittest.main()
