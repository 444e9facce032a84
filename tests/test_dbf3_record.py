"""
Test file for encoding and decoding single records.
"""

import unittest
from decimal import Decimal
from dbf3_module import (
    DBFColumn, DBFFormatError,
    pack_dbf_record, unpack_dbf_record
)


SCENARIO_COLUMNS = [
    DBFColumn(name="id", field_type="N", length=8, decimals=0),
    DBFColumn(name="name", field_type="C", length=10, decimals=0),
    DBFColumn(name="active", field_type="L", length=1, decimals=0),
]


def single(field_type, length, decimals=0):
    return [DBFColumn(name="F", field_type=field_type, length=length, decimals=decimals)]


class TestPackRecord(unittest.TestCase):
    """pack_dbf_record field formatting."""

    def test_scenario_row(self):
        self.assertEqual(pack_dbf_record(SCENARIO_COLUMNS, [1, "Alice", True]),
                         b' ' + b'       1' + b'Alice     ' + b'T')
        self.assertEqual(pack_dbf_record(SCENARIO_COLUMNS, [2, "Bob", False]),
                         b' ' + b'       2' + b'Bob       ' + b'F')

    def test_deleted_flag(self):
        self.assertEqual(pack_dbf_record(SCENARIO_COLUMNS, [1, "A", True], deleted=True)[:1], b'*')

    def test_missing_values_are_blank(self):
        self.assertEqual(pack_dbf_record(SCENARIO_COLUMNS, ["7"]),
                         b' ' + b'       7' + b' ' * 10 + b'F')

    def test_number_decimals(self):
        columns = single("N", 6, 2)
        self.assertEqual(pack_dbf_record(columns, ["3.5"])[1:], b'  3.50')
        self.assertEqual(pack_dbf_record(columns, [2.25])[1:], b'  2.25')
        self.assertEqual(pack_dbf_record(columns, [Decimal("-1.5")])[1:], b' -1.50')
        self.assertEqual(pack_dbf_record(columns, [" 12 "])[1:], b' 12.00')
        self.assertEqual(pack_dbf_record(columns, ["12abc"])[1:], b' 12.00')

    def test_number_without_digits_is_blank(self):
        columns = single("N", 5)
        for value in (None, "", "abc", "-", True):
            self.assertEqual(pack_dbf_record(columns, [value])[1:], b'     ')

    def test_number_overflow_truncated(self):
        self.assertEqual(pack_dbf_record(single("N", 4), [123456])[1:], b'1234')
        self.assertEqual(pack_dbf_record(single("N", 8, 2), [1234567])[1:], b'1234567.')

    def test_number_huge_exponent(self):
        """Magnitudes far past the field width keep their leading digits."""
        self.assertEqual(pack_dbf_record(single("N", 10, 2), ["1e999999999"])[1:], b'1000000000')
        self.assertEqual(pack_dbf_record(single("N", 4), ["-5e99999"])[1:], b'-500')
        self.assertEqual(pack_dbf_record(single("N", 6), ["12.5e10"])[1:], b'125000')
        self.assertEqual(pack_dbf_record(single("N", 4), ["0e9"])[1:], b'   0')

    def test_character_truncated_and_padded(self):
        columns = single("C", 10)
        self.assertEqual(pack_dbf_record(columns, ["ABCDEFGHIJKLMNOP"])[1:], b'ABCDEFGHIJ')
        self.assertEqual(pack_dbf_record(columns, ["AB"])[1:], b'AB        ')
        self.assertEqual(pack_dbf_record(columns, [42])[1:], b'42        ')

    def test_logical_false_values(self):
        columns = single("L", 1)
        for value in (False, None, 0, "", "0", "n", "N", "No", "f", "FALSE"):
            self.assertEqual(pack_dbf_record(columns, [value])[1:], b'F', value)

    def test_logical_true_values(self):
        columns = single("L", 1)
        for value in (True, 1, "T", "Y", "yes", "true", "1", "x"):
            self.assertEqual(pack_dbf_record(columns, [value])[1:], b'T', value)

    def test_date_passthrough(self):
        columns = single("D", 8)
        self.assertEqual(pack_dbf_record(columns, ["03/02/03"])[1:], b'03/02/03')
        self.assertEqual(pack_dbf_record(columns, ["20240115"])[1:], b'20240115')
        self.assertEqual(pack_dbf_record(columns, ["2024"])[1:], b'2024    ')
        self.assertEqual(pack_dbf_record(columns, ["2024-01-15"])[1:], b'2024-01-')

    def test_record_width(self):
        columns = SCENARIO_COLUMNS + single("D", 8) + single("N", 6, 2)
        for values in ([], [10 ** 12, "x" * 50, "y", "123456789", 99999999]):
            self.assertEqual(len(pack_dbf_record(columns, values)), 1 + 8 + 10 + 1 + 8 + 6)

    def test_unknown_type(self):
        with self.assertRaises(DBFFormatError):
            pack_dbf_record(single("M", 10), ["1"])


class TestUnpackRecord(unittest.TestCase):
    """unpack_dbf_record decoding and normalization."""

    def test_scenario_row(self):
        data = b' ' + b'       1' + b'Alice     ' + b'T'
        self.assertEqual(unpack_dbf_record(SCENARIO_COLUMNS, data), ["1", "Alice", True])

    def test_deleted_row(self):
        data = b'*' + b'       1' + b'Alice     ' + b'T'
        self.assertIsNone(unpack_dbf_record(SCENARIO_COLUMNS, data))

    def test_any_non_space_flag_is_deleted(self):
        data = b'X' + b'       1' + b'Alice     ' + b'T'
        self.assertIsNone(unpack_dbf_record(SCENARIO_COLUMNS, data))

    def test_short_record(self):
        self.assertIsNone(unpack_dbf_record(SCENARIO_COLUMNS, b' ' + b'       1'))
        self.assertIsNone(unpack_dbf_record(SCENARIO_COLUMNS, b''))

    def test_character_keeps_leading_spaces(self):
        self.assertEqual(unpack_dbf_record(single("C", 6), b' ' + b'  ab  '), ["  ab"])

    def test_number_keeps_trailing_spaces(self):
        self.assertEqual(unpack_dbf_record(single("N", 6), b' ' + b'  12  '), ["12  "])
        self.assertEqual(unpack_dbf_record(single("N", 4), b' ' + b'    '), [""])

    def test_logical_alphabet(self):
        columns = single("L", 1)
        for symbol in "yYtT1":
            self.assertIs(unpack_dbf_record(columns, b' ' + symbol.encode())[0], True)
        for symbol in "nNfF0":
            self.assertIs(unpack_dbf_record(columns, b' ' + symbol.encode())[0], False)
        for symbol in "? ":
            self.assertIsNone(unpack_dbf_record(columns, b' ' + symbol.encode())[0])

    def test_date_raw(self):
        self.assertEqual(unpack_dbf_record(single("D", 8), b' 03/02/03'), ["03/02/03"])
        self.assertEqual(unpack_dbf_record(single("D", 8), b' ' + b' ' * 8), [" " * 8])

    def test_latin1_text(self):
        columns = single("C", 5)
        data = pack_dbf_record(columns, ["café"])
        self.assertEqual(data, b' caf\xe9 ')
        self.assertEqual(unpack_dbf_record(columns, data), ["café"])

    def test_unknown_type(self):
        with self.assertRaises(DBFFormatError):
            unpack_dbf_record(single("M", 2), b' 12')

    def test_round_trip(self):
        """Values that fit their columns come back after normalization."""
        columns = SCENARIO_COLUMNS + single("D", 8) + single("N", 7, 2)
        rows = [
            (["1", "Alice", True, "03/02/03", "12.50"], ["1", "Alice", True, "03/02/03", "12.50"]),
            (["-42", "  Bob", False, "20240115", "0.25"], ["-42", "  Bob", False, "20240115", "0.25"]),
            ([99999999, "1234567890", "Y", "12/31/99", 1234.5], ["99999999", "1234567890", True, "12/31/99", "1234.50"]),
        ]
        for values, expected in rows:
            self.assertEqual(unpack_dbf_record(columns, pack_dbf_record(columns, values)), expected)


if __name__ == '__main__':
    unittest.main()
