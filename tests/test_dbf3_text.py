"""
Test file for character-separated text export.
"""

import os
import shutil
import tempfile
import unittest
from dbf3_module import (
    DBFRangeError,
    dbf_file_create, dbf_file_close, dbf_file_open, dbf_file_append_rows, dbf_file_delete_row
)
from dbf3_text import escape_value, format_value, to_text, export_dbf_to_text


SCENARIO_COLUMNS = [
    {"name": "id", "type": "N", "length": 8, "decimals": 0},
    {"name": "name", "type": "C", "length": 10, "decimals": 0},
    {"name": "active", "type": "L", "length": 1, "decimals": 0},
]


class TestTextHelpers(unittest.TestCase):
    """escape_value and format_value."""

    def test_escape_enclose(self):
        self.assertEqual(escape_value("O'Neil", "'", "\\"), "'O\\'Neil'")

    def test_escape_doubles_escape(self):
        self.assertEqual(escape_value("a\\b", "'", "\\"), "'a\\\\b'")

    def test_no_escape(self):
        self.assertEqual(escape_value("O'Neil", "'", ""), "'O'Neil'")
        self.assertEqual(escape_value("plain", "", ""), "plain")

    def test_format_value(self):
        self.assertEqual(format_value(None), "")
        self.assertEqual(format_value(True), "T")
        self.assertEqual(format_value(False), "F")
        self.assertEqual(format_value("12"), "12")


class TestToText(unittest.TestCase):
    """to_text and export_dbf_to_text on a small table."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.filename = os.path.join(self.test_dir, "test_text.DBF")
        dbf = dbf_file_create(self.filename, SCENARIO_COLUMNS)
        dbf_file_append_rows(dbf, [[1, "Alice", True], [2, "Bob", False]])
        dbf_file_close(dbf)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_default_format(self):
        dbf = dbf_file_open(self.filename)
        self.assertEqual(to_text(dbf), "'1','Alice','T'\n'2','Bob','F'\n")
        dbf_file_close(dbf)

    def test_custom_separators(self):
        dbf = dbf_file_open(self.filename)
        text = to_text(dbf, field='|', enclose='', escape='', record='\r\n', show_header=True)
        self.assertEqual(text, "id|name|active\r\n1|Alice|T\r\n2|Bob|F\r\n")
        dbf_file_close(dbf)

    def test_row_range(self):
        dbf = dbf_file_open(self.filename)
        self.assertEqual(to_text(dbf, 1, 1), "'2','Bob','F'\n")
        self.assertEqual(to_text(dbf, 0, 0), "'1','Alice','T'\n")
        dbf_file_close(dbf)

    def test_deleted_rows_skipped(self):
        dbf = dbf_file_open(self.filename)
        dbf_file_delete_row(dbf, 0)
        self.assertEqual(to_text(dbf), "'2','Bob','F'\n")
        dbf_file_close(dbf)

    def test_escaped_values(self):
        dbf = dbf_file_open(self.filename, 'r+')
        dbf_file_append_rows(dbf, [[3, "O'Neil", True], [4, "a\\b", None]])
        self.assertEqual(to_text(dbf, 2), "'3','O\\'Neil','T'\n'4','a\\\\b','F'\n")
        dbf_file_close(dbf)

    def test_invalid_range(self):
        dbf = dbf_file_open(self.filename)
        with self.assertRaises(DBFRangeError):
            to_text(dbf, -1)
        with self.assertRaises(DBFRangeError):
            to_text(dbf, 0, 2)
        dbf_file_close(dbf)

    def test_empty_table(self):
        empty = os.path.join(self.test_dir, "test_empty.DBF")
        dbf = dbf_file_create(empty, SCENARIO_COLUMNS)
        self.assertEqual(to_text(dbf), "")
        self.assertEqual(to_text(dbf, show_header=True), "'id','name','active'\n")
        dbf_file_close(dbf)

    def test_export_to_file(self):
        text_filename = os.path.join(self.test_dir, "out.txt")
        self.assertEqual(export_dbf_to_text(self.filename, text_filename, enclose='"'), 2)
        with open(text_filename, encoding='utf-8') as f:
            self.assertEqual(f.read(), '"1","Alice","T"\n"2","Bob","F"\n')


if __name__ == '__main__':
    unittest.main()
