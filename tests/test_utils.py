from datetime import datetime, timezone
import unittest

from s3_engine.utils import (
    compose_s3_key,
    folder_prefix,
    format_last_modified,
    format_size,
    key_basename,
    load_package_info,
    parse_size_bytes,
)


class SizeTests(unittest.TestCase):
    def test_parse_size_bytes_accepts_units(self):
        self.assertEqual(512, parse_size_bytes("512"))
        self.assertEqual(5 * 1024 * 1024, parse_size_bytes("5MB"))
        self.assertEqual(2 * 1024, parse_size_bytes(" 2 kb "))
        self.assertEqual(1024 ** 3, parse_size_bytes("1GB"))

    def test_parse_size_bytes_rejects_invalid(self):
        for value in ("", "nope", "0", "-3MB", "1.5MB"):
            with self.subTest(value=value):
                self.assertIsNone(parse_size_bytes(value))

    def test_format_size(self):
        self.assertEqual("-", format_size(None))
        self.assertEqual("512 B", format_size(512))
        self.assertEqual("1.5 KB", format_size(1536))
        self.assertEqual("2.0 MB", format_size(2 * 1024 * 1024))


class KeyTests(unittest.TestCase):
    def test_compose_s3_key(self):
        self.assertEqual("a/b/file.txt", compose_s3_key("/a/b", "file.txt"))
        self.assertEqual("file.txt", compose_s3_key("", " file.txt "))
        with self.assertRaises(ValueError):
            compose_s3_key("a/", "  ")

    def test_folder_prefix(self):
        self.assertEqual("a/b/", folder_prefix("/a/b"))
        self.assertEqual("", folder_prefix(" / "))

    def test_key_basename(self):
        self.assertEqual("c.txt", key_basename("a/b/c.txt"))
        self.assertEqual("b", key_basename("a/b/"))
        self.assertEqual("download", key_basename(""))


class MiscTests(unittest.TestCase):
    def test_format_last_modified(self):
        self.assertEqual("-", format_last_modified(None))
        self.assertEqual(
            "2024-01-02 03:04:05 UTC",
            format_last_modified(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)),
        )

    def test_package_info_for_unknown_distribution(self):
        info = load_package_info("definitely-not-installed-dist")

        self.assertEqual("definitely-not-installed-dist", info.name)
        self.assertEqual("", info.version)


if __name__ == "__main__":
    unittest.main()
