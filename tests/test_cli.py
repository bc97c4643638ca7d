import os
import sys
import shutil
import tempfile
import unittest
from io import StringIO
from pathlib import Path
from unittest import mock

from rich.console import Console

from back64up import __version__
from back64up.back64up import enumerate_paths
from back64up.cli import build_parser, main


class TestBackupCommand(unittest.TestCase):
    def setUp(self):
        """Create a working directory holding a.txt ('hi') and b.txt ('yo')."""
        self.original_cwd = os.getcwd()
        self.test_dir = Path(tempfile.mkdtemp())
        os.chdir(self.test_dir)
        Path("a.txt").write_text("hi")
        Path("b.txt").write_text("yo")
        self.out, self.err = StringIO(), StringIO()

    def tearDown(self):
        os.chdir(self.original_cwd)
        shutil.rmtree(self.test_dir)

    def _run(self, *argv):
        return main(
            list(argv),
            console=Console(file=self.out, width=300),
            err_console=Console(file=self.err, width=300),
        )

    def test_json_backup(self):
        """'*.txt' in json format produces the flat path map."""
        self.assertEqual(self._run("backup", "*.txt", "out.json", "--format", "json"), 0)
        self.assertEqual(
            Path("out.json").read_text(encoding="utf-8"),
            '{"a.txt":"aGk=","b.txt":"eW8="}',
        )
        self.assertIn(str(self.test_dir.resolve() / "out.json"), self.out.getvalue())

    def test_csv_backup(self):
        self.assertEqual(self._run("backup", "*.txt", "out.csv", "--format", "csv"), 0)
        self.assertEqual(
            Path("out.csv").read_text(encoding="utf-8"),
            "filepath,content\na.txt,aGk=\nb.txt,eW8=",
        )

    def test_tsv_backup(self):
        self.assertEqual(self._run("backup", "*.txt", "out.tsv", "--format", "tsv"), 0)
        self.assertEqual(
            Path("out.tsv").read_text(encoding="utf-8"),
            "filepath\tcontent\na.txt\taGk=\nb.txt\teW8=",
        )

    def test_default_output_file(self):
        """Without an out-file the backup goes to ./backup.json."""
        self.assertEqual(self._run("backup", "*.txt"), 0)
        self.assertEqual(
            Path("backup.json").read_text(encoding="utf-8"),
            '{"a.txt":"aGk=","b.txt":"eW8="}',
        )

    def test_no_matches_writes_header_only(self):
        self.assertEqual(self._run("backup", "*.nothing", "out.json"), 0)
        self.assertEqual(Path("out.json").read_text(encoding="utf-8"), "{}")
        self.assertEqual(self._run("backup", "*.nothing", "out.csv", "--format", "csv"), 0)
        self.assertEqual(Path("out.csv").read_text(encoding="utf-8"), "filepath,content")
        self.assertEqual(self._run("backup", "*.nothing", "out.tsv", "--format", "tsv"), 0)
        self.assertEqual(Path("out.tsv").read_text(encoding="utf-8"), "filepath\tcontent")

    def test_missing_root_directory_fails(self):
        """A pattern under a missing directory exits 1 and leaves the output alone."""
        Path("out.json").write_text("previous backup")
        self.assertEqual(self._run("backup", "missing/*.txt", "out.json"), 1)
        self.assertEqual(Path("out.json").read_text(), "previous backup")
        self.assertIn("encountered an error during backup", self.err.getvalue())
        self.assertIn("caused by: EnumerationError", self.err.getvalue())

    def test_missing_root_directory_creates_no_file(self):
        self.assertEqual(self._run("backup", "missing/*.txt", "out.json"), 1)
        self.assertFalse(Path("out.json").exists())

    def test_invalid_patterns_fail_without_output(self):
        """Empty patterns and patterns with a NUL character exit 1 and write nothing."""
        for pattern in ["", "a\0b.txt"]:
            with self.subTest(pattern=pattern):
                self.assertEqual(self._run("backup", pattern, "out.json"), 1)
                self.assertFalse(Path("out.json").exists())
        self.assertIn("encountered an error during backup", self.err.getvalue())

    @unittest.skipUnless(
        sys.platform.startswith("linux") and sys.getfilesystemencoding() == "utf-8",
        "needs a filesystem that accepts non-UTF-8 names",
    )
    def test_undecodable_file_name(self):
        """A matched file whose name is not valid UTF-8 is backed up byte for byte."""
        Path(os.fsdecode(b"bad\xff.txt")).write_text("hi")
        Path("out.csv").write_text("previous")
        self.assertEqual(self._run("backup", "*.txt", "out.csv", "--format", "csv"), 0)
        self.assertEqual(
            Path("out.csv").read_bytes(),
            b"filepath,content\na.txt,aGk=\nb.txt,eW8=\nbad\xff.txt,aGk=",
        )

    def test_file_deleted_after_enumeration_fails(self):
        """A file vanishing before it is read fails the run without output."""

        def enumerate_then_delete(*args, **kwargs):
            paths = enumerate_paths(*args, **kwargs)
            os.remove("b.txt")
            return paths

        with mock.patch(
            "back64up.back64up.enumerate_paths", side_effect=enumerate_then_delete
        ):
            self.assertEqual(self._run("backup", "*.txt", "out.json"), 1)
        self.assertFalse(Path("out.json").exists())
        self.assertIn("caused by: AggregateReadError", self.err.getvalue())

    def test_unsupported_format(self):
        """An unknown --format is a usage error with exit status 1."""
        self.assertEqual(self._run("backup", "*.txt", "out.xml", "--format", "xml"), 1)
        self.assertFalse(Path("out.xml").exists())
        self.assertIn("invalid choice", self.err.getvalue())

    def test_missing_arguments(self):
        self.assertEqual(self._run(), 1)
        self.assertEqual(self._run("backup"), 1)
        self.assertIn("usage:", self.err.getvalue())

    def test_subcommand_errors_show_subcommand_usage(self):
        self.assertEqual(self._run("backup", "*.txt", "--format", "xml"), 1)
        self.assertIn("usage: back64up backup", self.err.getvalue())

    def test_invalid_max_workers(self):
        self.assertEqual(self._run("backup", "*.txt", "--max-workers", "0"), 1)
        self.assertEqual(self._run("backup", "*.txt", "--max-workers", "many"), 1)

    def test_max_workers_does_not_change_output(self):
        self.assertEqual(self._run("backup", "*.txt", "out.json", "--max-workers", "1"), 0)
        self.assertEqual(
            Path("out.json").read_text(encoding="utf-8"),
            '{"a.txt":"aGk=","b.txt":"eW8="}',
        )

    def test_extension_mismatch_only_warns(self):
        self.assertEqual(self._run("backup", "*.txt", "out.txt", "--format", "csv"), 0)
        self.assertIn("extension does not match", self.err.getvalue())
        self.assertTrue(Path("out.txt").exists())

    def test_verbose_logging(self):
        """--verbose adds tables but does not change the output content."""
        self.assertEqual(self._run("backup", "*.txt", "out.json", "-v"), 0)
        self.assertIn("Backup Configuration", self.out.getvalue())
        self.assertIn("encoded: a.txt", self.out.getvalue())
        self.assertEqual(
            Path("out.json").read_text(encoding="utf-8"),
            '{"a.txt":"aGk=","b.txt":"eW8="}',
        )

    def test_verbose_failure_prints_traceback(self):
        self.assertEqual(self._run("backup", "missing/*.txt", "out.json", "--verbose"), 1)
        self.assertIn("Traceback", self.err.getvalue())

    def test_write_failure(self):
        self.assertEqual(self._run("backup", "*.txt", "nowhere/out.json"), 1)
        self.assertIn("caused by: FileNotFoundError", self.err.getvalue())


class TestParser(unittest.TestCase):
    def test_defaults(self):
        args = build_parser().parse_args(["backup", "*.txt"])
        self.assertEqual(args.command, "backup")
        self.assertEqual(args.pattern, "*.txt")
        self.assertEqual(args.out_file, "./backup.json")
        self.assertEqual(args.output_format, "json")
        self.assertFalse(args.verbose)
        self.assertIsNone(args.max_workers)

    def test_version(self):
        with mock.patch("sys.stdout", new_callable=StringIO) as stdout:
            with self.assertRaises(SystemExit) as cm:
                build_parser().parse_args(["--version"])
        self.assertEqual(cm.exception.code, 0)
        self.assertIn(__version__, stdout.getvalue())


if __name__ == "__main__":
    unittest.main()
