import json
import unittest

from config import CONNECTED_SENTINEL, HELLO_REPLY
from errors import MissingMetadataError, UnknownMessageTypeError
from protocol.classifier import MessageClassifier, is_greeting
from protocol.messages import Connected, FileChunk, PlainText, encode_message
from transfer.receiver import TransferReceiver

from fakes import FakeConnection


class GreetingTests(unittest.TestCase):
    def test_exact_word_only(self):
        self.assertTrue(is_greeting("Hello"))
        self.assertTrue(is_greeting(" hello "))
        self.assertFalse(is_greeting("hello there"))
        self.assertFalse(is_greeting("Hello!"))


class ClassifierTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.connected = []
        self.texts = []
        self.errors = []
        self.completed = []

        async def on_complete(received):
            self.completed.append(received)

        self.receiver = TransferReceiver(complete_callback=on_complete)
        self.classifier = MessageClassifier(
            self.receiver,
            on_connected=lambda conn, name: self.connected.append((conn, name)),
            on_text=lambda name, text: self.texts.append((name, text)),
            on_error=lambda name, err: self.errors.append(err),
        )
        self.conn = FakeConnection()

    async def test_sentinel_fires_connected(self):
        message = await self.classifier.handle("000102", CONNECTED_SENTINEL.encode(), self.conn)
        self.assertIsInstance(message, Connected)
        self.assertEqual(self.connected, [(self.conn, "000102")])
        self.assertEqual(self.texts, [])

    async def test_hello_gets_auto_reply(self):
        await self.classifier.handle("000102", b"Hello", self.conn)
        self.assertEqual(self.conn.written, [HELLO_REPLY.encode("utf-8")])
        self.assertEqual(self.texts, [("000102", "Hello")])

    async def test_other_text_gets_no_reply(self):
        message = await self.classifier.handle("000102", b"hello there", self.conn)
        self.assertIsInstance(message, PlainText)
        self.assertEqual(self.conn.written, [])
        self.assertEqual(self.texts, [("000102", "hello there")])

    async def test_reply_failure_still_delivers_text(self):
        self.conn.destroyed = True
        await self.classifier.handle("000102", b"Hello", self.conn)
        self.assertEqual(self.texts, [("000102", "Hello")])

    async def test_unknown_type_is_reported_and_dropped(self):
        payload = json.dumps({"type": "ping"}).encode()
        message = await self.classifier.handle("000102", payload, self.conn)
        self.assertIsNone(message)
        self.assertIsInstance(self.errors[0], UnknownMessageTypeError)
        self.assertEqual(self.texts, [])

    async def test_chunk_before_metadata_is_reported(self):
        chunk = FileChunk(file_id="nope", index=0, data=b"x")
        await self.classifier.handle("000102", encode_message(chunk), self.conn)
        self.assertIsInstance(self.errors[0], MissingMetadataError)
        self.assertEqual(self.errors[0].file_id, "nope")

    async def test_file_messages_reach_receiver(self):
        meta = {"type": "file-meta", "fileId": "f", "name": "a.txt",
                "mime": "text/plain", "size": 2, "totalChunks": 1}
        chunk = {"type": "file-chunk", "fileId": "f", "index": 0, "data": [104, 105]}
        await self.classifier.handle("000102", json.dumps(meta).encode(), self.conn)
        await self.classifier.handle("000102", json.dumps(chunk).encode(), self.conn)
        self.assertEqual(len(self.completed), 1)
        self.assertEqual(self.completed[0].data, b"hi")
        self.assertEqual(self.completed[0].peer_name, "000102")
        self.assertEqual(self.texts, [])
        self.assertEqual(self.errors, [])

    async def test_deeply_nested_line_is_delivered_as_text(self):
        line = b"[" * 100000
        message = await self.classifier.handle("000102", line, self.conn)
        self.assertIsInstance(message, PlainText)
        self.assertEqual(self.texts, [("000102", line.decode())])
        self.assertEqual(self.errors, [])
        self.assertEqual(self.conn.written, [])

    async def test_inconsistent_metadata_is_reported(self):
        raw = json.dumps({"type": "file-meta", "fileId": "big", "name": "n",
                          "mime": "m", "size": 1, "totalChunks": 50000000})
        await self.classifier.handle("000102", raw.encode(), self.conn)
        self.assertEqual(len(self.errors), 1)
        self.assertIsNone(self.receiver.get("big"))

    async def test_failing_callback_does_not_raise(self):
        def boom(name, text):
            raise RuntimeError("boom")

        classifier = MessageClassifier(self.receiver, on_text=boom)
        message = await classifier.handle("000102", b"hi", self.conn)
        self.assertEqual(message.text, "hi")


if __name__ == "__main__":
    unittest.main()
