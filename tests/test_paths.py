import os
import tempfile
import unittest
from pathlib import Path

from samps.errors import FilesystemError
from samps.paths import (
    conversion_destination,
    delete_file,
    move_file,
    rename_destination,
    sanitize_segment,
    standardize_path,
)


class TestStandardizePath(unittest.TestCase):
    def test_relative_and_dotted_forms_collapse(self):
        with tempfile.TemporaryDirectory() as td:
            direct = standardize_path(Path(td) / "kick.wav")
            dotted = standardize_path(f"{td}/sub/../kick.wav")
            self.assertEqual(direct, dotted)
            self.assertTrue(os.path.isabs(direct))

    def test_home_is_expanded(self):
        self.assertEqual(standardize_path("~/kick.wav"), os.path.join(os.path.expanduser("~"), "kick.wav"))


class TestRenameDestination(unittest.TestCase):
    def test_keeps_extension_when_omitted(self):
        dest = rename_destination(Path("/lib/drums/kick.wav"), "kick_hard")
        self.assertEqual(dest, Path("/lib/drums/kick_hard.wav"))

    def test_explicit_extension_is_used(self):
        dest = rename_destination(Path("/lib/drums/kick.wav"), "kick.aiff")
        self.assertEqual(dest, Path("/lib/drums/kick.aiff"))

    def test_blank_name_is_rejected(self):
        self.assertIsNone(rename_destination(Path("/lib/kick.wav"), "   "))

    def test_illegal_characters_are_replaced(self):
        dest = rename_destination(Path("/lib/kick.wav"), "a/b:c")
        self.assertEqual(dest.parent, Path("/lib"))
        self.assertEqual(dest.name, "a_b_c.wav")


class TestSanitizeSegment(unittest.TestCase):
    def test_trailing_dots_and_spaces_trimmed(self):
        self.assertEqual(sanitize_segment("snare . "), "snare")

    def test_long_name_keeps_extension(self):
        name = "x" * 300 + ".wav"
        out = sanitize_segment(name, preserve_ext=".wav")
        self.assertEqual(len(out), 255)
        self.assertTrue(out.endswith(".wav"))

    def test_empty_becomes_placeholder(self):
        self.assertEqual(sanitize_segment("..."), "_")


class TestConversionDestination(unittest.TestCase):
    def test_stem_with_new_extension(self):
        dest = conversion_destination(Path("/lib/loop.aiff"), Path("/out"), "mp3")
        self.assertEqual(dest, Path("/out/loop.mp3"))


class TestFileOperations(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_move_refuses_existing_destination(self):
        src = self.root / "a.wav"
        dest = self.root / "b.wav"
        src.write_bytes(b"a")
        dest.write_bytes(b"b")
        with self.assertRaises(FilesystemError):
            move_file(src, dest)
        self.assertEqual(dest.read_bytes(), b"b")
        self.assertTrue(src.exists())

    def test_move_of_missing_source_raises(self):
        with self.assertRaises(FilesystemError):
            move_file(self.root / "missing.wav", self.root / "b.wav")

    def test_delete_of_missing_file_raises(self):
        with self.assertRaises(FilesystemError):
            delete_file(self.root / "missing.wav")


if __name__ == "__main__":
    unittest.main()
