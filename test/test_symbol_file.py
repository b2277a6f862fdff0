#!/usr/bin/env python3
# (c) Copyright 2023 Aaron Kimball

import unittest

from dbg_testcase import *

SymbolFileWasmDWARF = symbol_file.SymbolFileWasmDWARF


class TestSymbolFile(DbgTestCase):

    def setUp(self):
        super().setUp()
        self.cu = MockCU(DW_LANG_Rust)
        self.dies = make_option_u32(self.cu)
        self.cu.die('DW_TAG_structure_type', name='Forward', declaration=True)
        self.cu.die('DW_TAG_structure_type', name='externref_t', byte_size=16)
        self.objfile = MockObjfile(MockDwarfInfo(self.cu))
        self.sym = SymbolFileWasmDWARF(self.backend, self.objfile)

    def test_plugin_factory(self):
        self.assertIsNone(SymbolFileWasmDWARF.create_instance(self.backend, None))
        self.assertIsNone(SymbolFileWasmDWARF.create_instance(self.backend, MockObjfile(None)))
        self.assertIsInstance(SymbolFileWasmDWARF.create_instance(self.backend, self.objfile),
                              SymbolFileWasmDWARF)

    def test_type_system_is_extended(self):
        self.assertIsInstance(self.sym.get_type_system(), type_system.ExtendedTypeSystem)
        self.assertIs(self.sym.get_type_system(), self.sym.get_type_system())

        # Without a module there are no module-bound types.
        no_module = SymbolFileWasmDWARF(self.backend, None)
        self.assertNotIsInstance(no_module.get_type_system(), type_system.ExtendedTypeSystem)

    def test_externref_override(self):
        typ = self.sym.find_definition_type_for_decl_context(['externref_t'])
        self.assertIsInstance(typ, types.PrimitiveType)
        self.assertEqual(typ.name, 'externref_t')
        self.assertEqual(typ.size, 4)
        self.assertFalse(typ.signed)
        self.assertIs(typ.type_system, self.sym.get_type_system())

        # Always the same type object; the DWARF definition is ignored.
        self.assertIs(self.sym.find_definition_type_for_decl_context(['externref_t']), typ)
        self.assertIs(self.sym.find_type_by_name('externref_t'), typ)

    def test_externref_without_module(self):
        no_module = SymbolFileWasmDWARF(self.backend, None)
        typ = no_module.find_type_by_name('externref_t')
        self.assertEqual(typ.size, 4)
        self.assertIs(no_module.find_type_by_name('externref_t'), typ)

    def test_find_by_qualified_name(self):
        option = self.sym.find_type_by_name('core::option::Option<u32>')
        self.assertIsInstance(option, types.ClassType)
        self.assertIs(option.getDIE(), self.dies['option'])
        self.assertIs(self.sym.find_definition_type_for_decl_context(
            ['Option<u32>', 'option', 'core']), option)

        u32 = self.sym.find_type_by_name('u32')
        self.assertEqual(u32.size, 4)

    def test_unknown_names(self):
        self.assertIsNone(self.sym.find_type_by_name('core::option::Option<u64>'))
        self.assertIsNone(self.sym.find_type_by_name('Forward'))
        self.assertIsNone(self.sym.find_definition_type_for_decl_context([]))

    def test_type_names(self):
        names = list(self.sym.type_names())
        self.assertIn('core::option::Option<u32>', names)
        self.assertIn('core::option::Option<u32>::Some', names)
        self.assertIn('u32', names)
        self.assertNotIn('Forward', names)
        self.assertEqual(names, sorted(names))

        self.assertEqual(list(self.sym.type_names('core::option::Option<u32>::')),
                         ['core::option::Option<u32>::None', 'core::option::Option<u32>::Some'])


class TestBackendTypes(DbgTestCase):
    """
    Type queries through the session object.
    """

    def setUp(self):
        super().setUp()
        self.cu = MockCU(DW_LANG_Rust)
        make_option_u32(self.cu)
        self.backend._symbol_file = SymbolFileWasmDWARF(
            self.backend, MockObjfile(MockDwarfInfo(self.cu)))

    def test_lookup_completes_type(self):
        option = self.backend.lookup_type('core::option::Option<u32>')
        self.assertTrue(option.is_complete())
        self.assertEqual(self.backend.get_bit_size(option), 64)

        info = self.backend.get_extended_type_info(option)
        self.assertEqual(len(info.variant_parts), 1)

        description = self.backend.describe_type(option)
        self.assertIn('bit size: 64', description)
        self.assertIn('variant_part', description)
        self.assertIn('template param T = u32', description)

    def test_lookup_missing(self):
        self.assertIsNone(self.backend.lookup_type('NoSuchType'))

    def test_type_names(self):
        self.assertEqual(list(self.backend.type_names('u')), ['u32'])


if __name__ == "__main__":
    unittest.main(verbosity=2)
