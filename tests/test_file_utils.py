import tempfile
import unittest
from pathlib import Path

from valheim_lifecycle.core.filesystem_utils import format_file_size, read_text_from_offset, safe_file_size


class FileUtilsTests(unittest.TestCase):
    def test_format_file_size(self):
        self.assertEqual(format_file_size(10), "10 B")
        self.assertEqual(format_file_size(1024), "1.0 KB")
        self.assertEqual(format_file_size(None), "0 B")

    def test_safe_file_size_missing(self):
        self.assertEqual(safe_file_size("/nonexistent/file"), 0)

    def test_read_text_from_offset_handles_truncation(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "server.log"
            path.write_text("first line\n", encoding="utf-8")
            text, offset = read_text_from_offset(path, 0)
            self.assertEqual(text, "first line\n")
            with path.open("a", encoding="utf-8") as fh:
                fh.write("second\n")
            text, offset = read_text_from_offset(path, offset)
            self.assertEqual(text, "second\n")
            path.write_text("new\n", encoding="utf-8")
            text, offset = read_text_from_offset(path, offset)
            self.assertEqual(text, "new\n")
            self.assertEqual(offset, 4)


if __name__ == "__main__":
    unittest.main()
