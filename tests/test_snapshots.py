from datetime import datetime, timezone
import unittest

from fakes import FakeTransport, list_page, make_client

from s3_engine.errors import DecodeError
from s3_engine.models import ObjectSummary
from s3_engine.snapshots import BucketSnapshot, capture_snapshot, diff_snapshots

CAPTURED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def snapshot(*objects):
    return BucketSnapshot.from_objects("bucket", objects, captured_at=CAPTURED, snapshot_id="s")


class DiffTests(unittest.TestCase):
    def test_modified_added_removed(self):
        base = snapshot(ObjectSummary("x", size=5, etag="1"))
        target = snapshot(ObjectSummary("x", size=5, etag="2"), ObjectSummary("y", size=3))

        diff = diff_snapshots(base, target)

        self.assertEqual(["x"], [change.key for change in diff.modified])
        self.assertEqual(["y"], [change.key for change in diff.added])
        self.assertEqual([], diff.removed)
        self.assertEqual("1", diff.modified[0].before.etag)
        self.assertEqual("2", diff.modified[0].after.etag)
        self.assertEqual(3, diff.added[0].entry.size)
        self.assertTrue(diff.has_changes)

    def test_removed_reports_base_metadata_sorted(self):
        base = snapshot(ObjectSummary("b", size=2), ObjectSummary("a", size=1))
        target = snapshot()

        diff = diff_snapshots(base, target)

        self.assertEqual(["a", "b"], [change.key for change in diff.removed])
        self.assertEqual(1, diff.removed[0].entry.size)

    def test_size_change_is_modification_but_timestamp_alone_is_not(self):
        base = snapshot(ObjectSummary("s", size=1, etag="e"), ObjectSummary("t", size=1, etag="e"))
        target = snapshot(
            ObjectSummary("s", size=2, etag="e"),
            ObjectSummary("t", size=1, etag="e", last_modified=CAPTURED),
        )

        self.assertEqual(["s"], [change.key for change in diff_snapshots(base, target).modified])

    def test_added_keys_come_out_in_key_order(self):
        base = snapshot(ObjectSummary("m"))
        target = snapshot(ObjectSummary("z"), ObjectSummary("m"), ObjectSummary("b"))

        self.assertEqual(["b", "z"], [change.key for change in diff_snapshots(base, target).added])

    def test_identical_snapshots_have_no_changes(self):
        base = snapshot(ObjectSummary("x", size=5, etag="1"))

        self.assertFalse(diff_snapshots(base, base).has_changes)


class SnapshotTests(unittest.TestCase):
    def test_entries_are_read_only(self):
        snap = snapshot(ObjectSummary("x", size=5))

        with self.assertRaises(TypeError):
            snap.entries["y"] = snap.entries["x"]  # type: ignore[index]
        self.assertEqual(1, snap.object_count)

    def test_entries_are_indexed_in_key_order(self):
        snap = snapshot(ObjectSummary("c"), ObjectSummary("a"), ObjectSummary("b/x"))

        self.assertEqual(["a", "b/x", "c"], list(snap.entries))

    def test_dict_round_trip(self):
        snap = snapshot(
            ObjectSummary("dir/", is_folder=True),
            ObjectSummary("dir/a", size=4, etag="e", last_modified=CAPTURED),
        )

        restored = BucketSnapshot.from_dict(snap.to_dict())

        self.assertEqual(snap.id, restored.id)
        self.assertEqual(snap.captured_at, restored.captured_at)
        self.assertEqual(dict(snap.entries), dict(restored.entries))

    def test_from_dict_rejects_incomplete_documents(self):
        with self.assertRaises(DecodeError):
            BucketSnapshot.from_dict({"bucket": "b"})


class CaptureTests(unittest.IsolatedAsyncioTestCase):
    async def test_capture_uses_flat_listing(self):
        transport = FakeTransport(
            list_page([("p/", 0, "e0"), ("p/a", 3, "e1")], truncated=True, token="t"),
            list_page([("p/b/c", 4, "e2")]),
        )

        snap = await capture_snapshot(make_client(transport), "p/")

        self.assertEqual("bucket", snap.bucket)
        self.assertEqual(["p/", "p/a", "p/b/c"], sorted(snap.entries))
        self.assertTrue(snap.entries["p/"].is_folder)
        self.assertEqual("e2", snap.entries["p/b/c"].etag)
        self.assertNotIn("delimiter", transport.query(0))


if __name__ == "__main__":
    unittest.main()
