"""
Test file for the dbf3_check command line tool.
"""

import contextlib
import io
import os
import shutil
import struct
import tempfile
import unittest
from dbf3_module import (
    dbf_file_create, dbf_file_close, dbf_file_open, dbf_file_append_rows, dbf_file_get_row_count
)
from dbf3_check import build_parser, main


COLUMNS = [
    {"name": "id", "type": "N", "length": 8, "decimals": 0},
    {"name": "name", "type": "C", "length": 10, "decimals": 0},
    {"name": "active", "type": "L", "length": 1, "decimals": 0},
]


class TestDBFCheck(unittest.TestCase):
    """Exit codes and output of main()."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.filename = os.path.join(self.test_dir, "test_check.DBF")
        dbf = dbf_file_create(self.filename, COLUMNS)
        dbf_file_append_rows(dbf, [[1, "Alice", True], [2, "Bob", False]])
        dbf_file_close(dbf)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def run_main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def corrupt_count(self, count):
        with open(self.filename, 'rb+') as f:
            f.seek(4)
            f.write(struct.pack("<L", count))

    def test_parser_defaults(self):
        args = build_parser().parse_args(["X.DBF"])
        self.assertFalse(args.scan_header)
        self.assertIsNone(args.repair)
        self.assertEqual(args.field, ",")

    def test_clean_file(self):
        code, out, _ = self.run_main(self.filename)
        self.assertEqual(code, 0)
        self.assertIn("name", out)
        self.assertIn("C(10)", out)
        self.assertNotIn("MISMATCH", out)

    def test_corrupt_count(self):
        self.corrupt_count(50)
        code, out, _ = self.run_main(self.filename)
        self.assertEqual(code, 1)
        self.assertIn("MISMATCH", out)

    def test_missing_file(self):
        code, _, err = self.run_main(os.path.join(self.test_dir, "missing.DBF"))
        self.assertEqual(code, 2)
        self.assertIn("Error opening", err)

    def test_text_after_repair(self):
        self.corrupt_count(50)
        code, out, _ = self.run_main(self.filename, "--text", "--field", "|", "--enclose", "")
        self.assertEqual(code, 1)
        self.assertTrue(out.endswith("1|Alice|T\n2|Bob|F\n"))

    def test_repair_writes_copy(self):
        self.corrupt_count(50)
        repaired = os.path.join(self.test_dir, "fixed.DBF")
        code, out, _ = self.run_main(self.filename, "--repair", repaired)
        self.assertEqual(code, 1)
        self.assertIn(f"Wrote 2 rows to {repaired}", out)

        dbf = dbf_file_open(repaired)
        self.assertEqual(dbf_file_get_row_count(dbf), 2)
        dbf_file_close(dbf)

        code, _, _ = self.run_main(repaired)
        self.assertEqual(code, 0)


if __name__ == '__main__':
    unittest.main()
