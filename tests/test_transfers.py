import tempfile
import unittest
from pathlib import Path
from urllib.parse import unquote, urlsplit

from fakes import FakeTransport, list_page, make_client

from s3_engine.cancellation import CancellationToken, OperationCancelledError
from s3_engine.client import TransformedPayload
from s3_engine.errors import DecodeError
from s3_engine.transfers import (
    download_file,
    download_folder,
    download_ranges,
    local_files,
    partial_path,
    upload_folder,
)
from s3_engine.transport import HttpResponse

BODY = b"0123456789"


class ReversingTransform:
    def encode(self, key, data):
        return TransformedPayload(data[::-1], {"transform": "reverse"})

    def decode(self, key, data, metadata):
        return data[::-1]


class RangeService:
    """Serves ``BODY`` for HEAD, whole GET and ranged GET requests."""

    def __init__(self, body=BODY):
        self.body = body
        self.ranges = []

    def __call__(self, request):
        if request.method == "HEAD":
            return HttpResponse(status=200, headers={"content-length": str(len(self.body))})
        range_header = request.headers.get("Range")
        if range_header is None:
            return HttpResponse(status=200, body=self.body)
        self.ranges.append(range_header)
        start, end = (int(bound) for bound in range_header[len("bytes="):].split("-"))
        return HttpResponse(status=206, body=self.body[start : end + 1])


class RangeDownloadTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.destination = Path(self._tmp.name) / "big.bin"

    async def test_segments_cover_object_and_replace_partial(self):
        service = RangeService()
        client = make_client(FakeTransport(handler=service))
        progress = []

        written = await download_ranges(
            client, "big.bin", self.destination, len(BODY), segment_size=4,
            progress=lambda *args: progress.append(args),
        )

        self.assertEqual(10, written)
        self.assertEqual(BODY, self.destination.read_bytes())
        self.assertFalse(partial_path(self.destination).exists())
        self.assertEqual(["bytes=0-3", "bytes=4-7", "bytes=8-9"], service.ranges)
        self.assertEqual([(4, 10), (8, 10), (10, 10)], progress)

    async def test_resumes_from_partial_file(self):
        partial_path(self.destination).write_bytes(BODY[:4])
        service = RangeService()
        client = make_client(FakeTransport(handler=service))

        await download_ranges(client, "big.bin", self.destination, len(BODY), segment_size=4)

        self.assertEqual(["bytes=4-7", "bytes=8-9"], service.ranges)
        self.assertEqual(BODY, self.destination.read_bytes())

    async def test_partial_longer_than_object_is_discarded(self):
        partial_path(self.destination).write_bytes(b"x" * 20)
        service = RangeService()
        client = make_client(FakeTransport(handler=service))

        await download_ranges(client, "big.bin", self.destination, len(BODY), segment_size=8)

        self.assertEqual(["bytes=0-7", "bytes=8-9"], service.ranges)
        self.assertEqual(BODY, self.destination.read_bytes())

    async def test_cancel_keeps_partial_for_next_attempt(self):
        client = make_client(FakeTransport(handler=RangeService()))
        cancel = CancellationToken()

        with self.assertRaises(OperationCancelledError):
            await download_ranges(
                client, "big.bin", self.destination, len(BODY), segment_size=4,
                progress=lambda *args: cancel.cancel(), cancel=cancel,
            )

        self.assertFalse(self.destination.exists())
        self.assertEqual(BODY[:4], partial_path(self.destination).read_bytes())

    async def test_empty_segment_is_decode_error(self):
        client = make_client(FakeTransport(default=HttpResponse(status=206, body=b"")))

        with self.assertRaises(DecodeError):
            await download_ranges(client, "big.bin", self.destination, len(BODY))

    async def test_download_file_uses_ranges_above_threshold(self):
        service = RangeService()
        transport = FakeTransport(handler=service)

        await download_file(make_client(transport), "big.bin", self.destination, segment_size=5, threshold=8)

        self.assertEqual(["HEAD", "GET", "GET"], transport.methods())
        self.assertEqual(["bytes=0-4", "bytes=5-9"], service.ranges)
        self.assertEqual(BODY, self.destination.read_bytes())

    async def test_download_file_fetches_small_object_whole(self):
        service = RangeService()
        transport = FakeTransport(handler=service)
        progress = []

        written = await download_file(
            make_client(transport), "big.bin", self.destination, progress=lambda *args: progress.append(args)
        )

        self.assertEqual(10, written)
        self.assertEqual([], service.ranges)
        self.assertEqual([(10, 10)], progress)
        self.assertEqual(BODY, self.destination.read_bytes())

    async def test_transformed_objects_are_never_ranged(self):
        service = RangeService(BODY[::-1])
        transport = FakeTransport(handler=service)
        client = make_client(transport, payload_transform=ReversingTransform())

        await download_file(client, "big.bin", self.destination, threshold=1)

        self.assertEqual(["GET"], transport.methods())
        self.assertEqual(BODY, self.destination.read_bytes())


class UploadFolderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        (self.root / "photos" / ".cache").mkdir(parents=True)
        (self.root / "a.txt").write_bytes(b"a")
        (self.root / ".hidden").write_bytes(b"h")
        (self.root / "photos" / "b.jpg").write_bytes(b"b")
        (self.root / "photos" / ".cache" / "thumb").write_bytes(b"t")

    def test_local_files_skip_hidden_entries(self):
        self.assertEqual(["a.txt", "photos/b.jpg"], [relative for relative, _ in local_files(self.root)])

    async def test_puts_each_file_under_prefix(self):
        transport = FakeTransport()
        progress = []

        keys = await upload_folder(
            make_client(transport), self.root, "backup", progress=lambda *args: progress.append(args)
        )

        self.assertEqual(["backup/a.txt", "backup/photos/b.jpg"], keys)
        self.assertEqual(["/bucket/backup/a.txt", "/bucket/backup/photos/b.jpg"], transport.paths())
        self.assertEqual([b"a", b"b"], [request.body for request in transport.requests])
        self.assertEqual([(1, 2), (2, 2)], progress)

    async def test_custom_uploader_replaces_put(self):
        seen = []

        async def upload(key, path):
            seen.append((key, path.name))

        transport = FakeTransport()
        await upload_folder(make_client(transport), self.root, "", upload_file=upload)

        self.assertEqual([("a.txt", "a.txt"), ("photos/b.jpg", "b.jpg")], seen)
        self.assertEqual([], transport.requests)

    async def test_cancel_stops_before_next_file(self):
        transport = FakeTransport()
        cancel = CancellationToken()

        with self.assertRaises(OperationCancelledError):
            await upload_folder(
                make_client(transport), self.root, "p/", progress=lambda *args: cancel.cancel(), cancel=cancel
            )

        self.assertEqual(1, len(transport.requests))

    async def test_source_must_be_directory(self):
        with self.assertRaises(NotADirectoryError):
            await upload_folder(make_client(FakeTransport()), self.root / "a.txt", "p/")


class DownloadFolderTests(unittest.IsolatedAsyncioTestCase):
    async def test_writes_tree_and_skips_placeholders_and_escapes(self):
        def service(request):
            if "list-type" in request.url:
                return list_page(
                    [
                        ("docs/", 0, "e0"),
                        ("docs/sub/", 0, "e1"),
                        ("docs/a.txt", 1, "e2"),
                        ("docs/sub/b.txt", 1, "e3"),
                        ("docs/../evil", 1, "e4"),
                    ]
                )
            key = unquote(urlsplit(request.url).path)[len("/bucket/"):]
            if request.method == "HEAD":
                return HttpResponse(status=200, headers={"content-length": "1"})
            return HttpResponse(status=200, body=key[-5:].encode())

        transport = FakeTransport(handler=service)
        progress = []
        with tempfile.TemporaryDirectory() as tmp:
            paths = await download_folder(
                make_client(transport), "docs/", tmp, progress=lambda *args: progress.append(args)
            )

            self.assertEqual([Path(tmp) / "a.txt", Path(tmp) / "sub" / "b.txt"], paths)
            self.assertEqual(b"b.txt", (Path(tmp) / "sub" / "b.txt").read_bytes())
            self.assertFalse((Path(tmp).parent / "evil").exists())
        self.assertEqual([(1, 3), (2, 3)], progress)
        self.assertNotIn("/bucket/docs/../evil", transport.paths())


if __name__ == "__main__":
    unittest.main()
