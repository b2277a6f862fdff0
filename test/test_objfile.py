#!/usr/bin/env python3
# (c) Copyright 2023 Aaron Kimball

import os
import tempfile
import unittest

from elftools.dwarf.dwarfinfo import DWARFInfo

import wasm_dbg.objfile as objfile
from dbg_testcase import *

HEADER = b'\x00asm\x01\x00\x00\x00'


def _section(section_id, payload):
    assert len(payload) < 0x80  # Single-byte LEB128 size.
    return bytes([section_id, len(payload)]) + payload


def _custom(name, data):
    encoded = name.encode('utf-8')
    return _section(objfile.SECTION_CUSTOM, bytes([len(encoded)]) + encoded + data)


class TestWasmObjectFile(DbgTestCase):

    def test_sections(self):
        data = HEADER + \
            _section(1, b'\x00') + \
            _section(objfile.SECTION_CODE, b'\x00') + \
            _custom('.debug_info', b'\xaa\xbb') + \
            _custom('name', b'')
        obj = objfile.WasmObjectFile(data=data)

        self.assertEqual([s.id for s in obj.sections], [1, objfile.SECTION_CODE, 0, 0])
        self.assertEqual(obj.code_section_offset, len(HEADER) + 3 + 2)
        self.assertTrue(obj.has_dwarf_info())

        debug_info = obj.get_section('.debug_info')
        self.assertEqual(debug_info.data, b'\xaa\xbb')
        self.assertEqual(debug_info.size, 2)
        self.assertEqual(data[debug_info.offset:debug_info.offset + 2], b'\xaa\xbb')
        self.assertEqual(obj.get_section('name').size, 0)
        self.assertIsNone(obj.get_section('.debug_line'))

    def test_dwarf_info(self):
        data = HEADER + \
            _custom('.debug_abbrev', b'\x00') + \
            _custom('.debug_info', b'')
        obj = objfile.WasmObjectFile(data=data)
        dwarf = obj.get_dwarf_info()

        self.assertIsInstance(dwarf, DWARFInfo)
        self.assertEqual(dwarf.config.machine_arch, 'wasm32')
        self.assertEqual(dwarf.config.default_address_size, 4)
        self.assertTrue(dwarf.config.little_endian)

        self.assertEqual(dwarf.debug_info_sec.name, '.debug_info')
        self.assertEqual(dwarf.debug_info_sec.size, 0)
        self.assertEqual(dwarf.debug_abbrev_sec.global_offset,
                         obj.get_section('.debug_abbrev').offset)
        self.assertEqual(dwarf.debug_abbrev_sec.stream.read(), b'\x00')
        self.assertIsNone(dwarf.debug_str_sec)
        self.assertIsNone(dwarf.debug_types_sec)
        self.assertEqual(list(dwarf.iter_CUs()), [])

    def test_no_debug_info(self):
        obj = objfile.WasmObjectFile(data=HEADER + _section(objfile.SECTION_CODE, b'\x00'))
        self.assertFalse(obj.has_dwarf_info())
        self.assertIsNone(obj.get_dwarf_info())
        self.assertIsNone(symbol_file.SymbolFileWasmDWARF.create_instance(self.backend, obj))

    def test_malformed(self):
        with self.assertRaises(objfile.WasmFormatError):
            objfile.WasmObjectFile(data=b'\x7fELF\x01\x00\x00\x00')
        with self.assertRaises(objfile.WasmFormatError):
            objfile.WasmObjectFile(data=b'\x00asm\x02\x00\x00\x00')
        with self.assertRaises(objfile.WasmFormatError):
            objfile.WasmObjectFile(data=b'\x00asm\x01\x00')
        with self.assertRaises(objfile.WasmFormatError):
            objfile.WasmObjectFile(data=HEADER + b'\x01\x10\x00')  # Section past EOF.
        with self.assertRaises(objfile.WasmFormatError):
            objfile.WasmObjectFile(data=HEADER + b'\x00\x02\x09a')  # Name past section end.

    def test_read_from_file(self):
        (fd, filename) = tempfile.mkstemp(suffix='.wasm')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(HEADER + _custom('.debug_abbrev', b'\x00'))
            obj = objfile.WasmObjectFile(filename)
            self.assertEqual(obj.filename, filename)
            self.assertIsNotNone(obj.get_section('.debug_abbrev'))
            self.assertFalse(obj.has_dwarf_info())
        finally:
            os.unlink(filename)


if __name__ == "__main__":
    unittest.main(verbosity=2)
