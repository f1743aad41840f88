import os
import tempfile
import unittest
from pathlib import Path

from config import CHUNK_SIZE, MAX_FILE_SIZE
from errors import AnalysisServiceError, NotConnectedError, TransferReadError
from protocol.messages import FileChunk, FileMeta, decode_message
from transfer.manager import TransferManager
from transfer.models import TransferState

from fakes import FakeConnection


class StubAnalysis:
    def __init__(self, summary=None, error=None):
        self.summary = summary
        self.error = error
        self.calls = []

    async def analyze(self, file, name=None):
        self.calls.append(name)
        if self.error is not None:
            raise self.error
        return self.summary


class TransferManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.events = []

        async def record(event_type, data):
            self.events.append((event_type, data))

        self.sender = TransferManager()
        self.receiver = TransferManager(analysis_service=StubAnalysis(summary="## Summary"))
        self.receiver.on_event(record)

    async def asyncTearDown(self):
        await self.sender.stop()

    def write_file(self, name: str, data: bytes) -> str:
        path = Path(self.tmp.name) / name
        path.write_bytes(data)
        return str(path)

    async def deliver(self, conn: FakeConnection) -> None:
        for frame in conn.written:
            await self.receiver.handle_incoming_chunk(decode_message(frame), "000102")

    async def send_and_wait(self, conn, paths):
        infos = await self.sender.queue_send(paths, conn)
        handles = [self.sender._outgoing[info.transfer_id] for info in infos]
        for handle in handles:
            await handle.wait()
        return infos

    async def test_file_round_trip(self):
        data = os.urandom(150000)
        conn = FakeConnection()
        [info] = await self.send_and_wait(conn, [self.write_file("photo.png", data)])
        await self.deliver(conn)

        self.assertEqual(info.state, TransferState.COMPLETED)
        [received] = self.receiver.get_received_files()
        self.assertEqual(received.data, data)
        self.assertEqual(received.name, "photo.png")
        self.assertEqual(received.mime, "image/png")
        self.assertIs(self.receiver.get_received_file(info.transfer_id), received)
        self.assertIn("file_received", [event for event, _ in self.events])

        states = {t.transfer_id: t.state for t in self.receiver.get_transfers()}
        self.assertEqual(states[info.transfer_id], TransferState.COMPLETED)

    async def test_multiple_files_get_distinct_transfers(self):
        conn = FakeConnection()
        infos = await self.send_and_wait(conn, [
            self.write_file("a.txt", b"alpha"),
            self.write_file("b.txt", b"beta"),
        ])
        await self.deliver(conn)
        self.assertEqual(len({i.transfer_id for i in infos}), 2)
        names = sorted(f.name for f in self.receiver.get_received_files())
        self.assertEqual(names, ["a.txt", "b.txt"])

    async def test_unreadable_file_writes_nothing(self):
        conn = FakeConnection()
        good = self.write_file("ok.txt", b"ok")
        missing = str(Path(self.tmp.name) / "missing.txt")
        with self.assertRaises(TransferReadError):
            await self.sender.queue_send([good, missing], conn)
        self.assertEqual(conn.written, [])
        self.assertEqual(self.sender.get_transfers(), [])

    async def test_send_without_connection(self):
        with self.assertRaises(NotConnectedError):
            await self.sender.queue_send([self.write_file("a.txt", b"a")])

    async def test_setup_connection_is_used_by_default(self):
        conn = FakeConnection()
        self.sender.setup_file_transfer(conn)
        self.assertIs(self.sender.connection, conn)
        await self.send_and_wait(None, [self.write_file("a.txt", b"a")])
        self.assertTrue(conn.written)

    async def test_cancel_unknown_transfer(self):
        self.assertFalse(await self.sender.cancel_transfer("nope"))

    async def test_cancelled_transfer_never_completes_on_receiver(self):
        holder = {}

        def on_write(frame):
            if b'"index":0,' in frame:
                holder["handle"].cancel()

        conn = FakeConnection(on_write=on_write)
        [info] = await self.sender.queue_send(
            [self.write_file("big.bin", os.urandom(4 * 65536))], conn
        )
        holder["handle"] = self.sender._outgoing[info.transfer_id]
        await holder["handle"].wait()
        await self.deliver(conn)

        self.assertEqual(info.state, TransferState.CANCELLED)
        self.assertEqual(self.receiver.get_received_files(), [])
        pending = self.receiver.receiver.get(info.transfer_id)
        self.assertLessEqual(pending.received_count, 1)

    async def test_analysis_success(self):
        conn = FakeConnection()
        [info] = await self.send_and_wait(conn, [self.write_file("notes.txt", b"some notes")])
        await self.deliver(conn)

        result = await self.receiver.analyze_file(info.transfer_id)
        self.assertTrue(result.ok)
        self.assertEqual(result.summary, "## Summary")
        self.assertIn(("analysis", result.model_dump()), self.events)

    async def test_analysis_failure_is_isolated(self):
        self.receiver._analysis_service = StubAnalysis(error=AnalysisServiceError("HTTP 500"))
        conn = FakeConnection()
        [info] = await self.send_and_wait(conn, [self.write_file("notes.txt", b"some notes")])
        await self.deliver(conn)

        result = await self.receiver.analyze_file(info.transfer_id)
        self.assertFalse(result.ok)
        self.assertIn("500", result.error_message)
        self.assertIsNotNone(self.receiver.get_received_file(info.transfer_id))
        notifications = [d for e, d in self.events if e == "notification" and d["type"] == "error"]
        self.assertEqual(len(notifications), 1)

    async def test_analysis_of_unknown_file(self):
        self.assertIsNone(await self.receiver.analyze_file("missing"))

    async def test_oversized_file_writes_nothing(self):
        conn = FakeConnection()
        path = self.write_file("huge.bin", b"")
        with open(path, "r+b") as f:
            f.truncate(MAX_FILE_SIZE + 1)
        with self.assertRaises(TransferReadError):
            await self.sender.queue_send([path], conn)
        self.assertEqual(conn.written, [])


class ReceivedFileRetentionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.events = []

        async def record(event_type, data):
            self.events.append((event_type, data))

        self.manager = TransferManager(max_received_files=2)
        self.manager.on_event(record)

    async def receive(self, file_id: str, data: bytes = b"contents") -> None:
        meta = FileMeta(file_id=file_id, name=f"{file_id}.txt", size=len(data), total_chunks=1)
        await self.manager.handle_incoming_chunk(meta, "000102")
        await self.manager.handle_incoming_chunk(FileChunk(file_id=file_id, index=0, data=data))

    def removed(self):
        return [data["file_id"] for event, data in self.events if event == "file_removed"]

    async def test_oldest_file_is_evicted(self):
        for file_id in ("a", "b", "c"):
            await self.receive(file_id)
        self.assertEqual([f.file_id for f in self.manager.get_received_files()], ["b", "c"])
        self.assertIsNone(self.manager.get_received_file("a"))
        self.assertEqual(self.removed(), ["a"])

    async def test_resent_file_counts_as_newest(self):
        await self.receive("a")
        await self.receive("b")
        await self.receive("a", b"updated")
        await self.receive("c")
        self.assertIsNone(self.manager.get_received_file("b"))
        self.assertEqual(self.manager.get_received_file("a").data, b"updated")

    async def test_remove_received_file(self):
        await self.receive("a", b"x" * (CHUNK_SIZE // 2))
        self.assertTrue(await self.manager.remove_received_file("a"))
        self.assertEqual(self.manager.get_received_files(), [])
        self.assertEqual(self.removed(), ["a"])
        self.assertFalse(await self.manager.remove_received_file("a"))
        self.assertIsNone(await self.manager.analyze_file("a"))


if __name__ == "__main__":
    unittest.main()
