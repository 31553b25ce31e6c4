import unittest

from crc7 import CRC7_TABLE, crc7


class Crc7TableTest(unittest.TestCase):
    def test_table_size(self):
        self.assertEqual(256, len(CRC7_TABLE))

    def test_table_values(self):
        self.assertEqual(0x00, CRC7_TABLE[0x00])
        self.assertEqual(0x41, CRC7_TABLE[0x01])
        self.assertEqual(0x4F, CRC7_TABLE[0xFF])

    def test_table_is_immutable(self):
        with self.assertRaises(TypeError):
            CRC7_TABLE[0] = 1


class Crc7Test(unittest.TestCase):
    def test_empty(self):
        self.assertEqual(0, crc7(0, b''))

    def test_empty_keeps_seed(self):
        self.assertEqual(0x55, crc7(0x55, b''))

    def test_known_command(self):
        # Example from the Maestro user's guide: 0x83, 0x01 -> 0x17
        self.assertEqual(0x17, crc7(0, b'\x83\x01'))

    def test_deterministic(self):
        data = b'\xaa\x0c\x04\x00\x70\x2e'

        self.assertEqual(crc7(0, data), crc7(0, data))
        self.assertEqual(0x22, crc7(0, data))

    def test_seed_continues_checksum(self):
        first = crc7(0, b'\x83')

        self.assertEqual(crc7(0, b'\x83\x01'), crc7(first, b'\x01'))

    def test_accepts_list(self):
        self.assertEqual(0x17, crc7(0, [0x83, 0x01]))
