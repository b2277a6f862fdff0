#!/usr/bin/env python3
# (c) Copyright 2023 Aaron Kimball

import unittest

import wasm_dbg.plugins as plugins
import wasm_dbg.stack as stack
from dbg_testcase import *


@plugins.plugin('test-widget', 'small', 'A small widget')
class SmallWidget(object):
    @staticmethod
    def create_instance(size):
        if size > 10:
            return None
        return SmallWidget()


@plugins.plugin('test-widget', 'any', 'Any widget')
class AnyWidget(object):
    @staticmethod
    def create_instance(size):
        return AnyWidget()


class Recorder(object):
    """ Plugin-shaped class that logs its initialize / terminate calls. """
    log = []
    fail = False

    @classmethod
    def initialize(cls):
        if cls.fail:
            raise RuntimeError(f'{cls.__name__} failed to initialize')
        Recorder.log.append(('init', cls.__name__))

    @classmethod
    def terminate(cls):
        Recorder.log.append(('term', cls.__name__))


class First(Recorder):
    pass


class Second(Recorder):
    pass


class Broken(Recorder):
    fail = True


class TestPlugins(unittest.TestCase):

    def setUp(self):
        Recorder.log = []

    def test_declared(self):
        self.assertIn(SmallWidget, plugins.DECLARED_PLUGINS)
        self.assertEqual(SmallWidget.PLUGIN_KIND, 'test-widget')
        self.assertEqual(SmallWidget.PLUGIN_NAME, 'small')
        self.assertEqual(SmallWidget.PLUGIN_DESCRIPTION, 'A small widget')
        # Declaring does not register.
        self.assertEqual(plugins.get_plugins('test-widget'), [])

    def test_registered_within_context(self):
        with plugins.PluginRegistryContext(SmallWidget, AnyWidget):
            names = [p.name for p in plugins.get_plugins('test-widget')]
            self.assertEqual(names, ['small', 'any'])
            self.assertEqual(plugins.find_plugin('test-widget', 'any').description, 'Any widget')

            self.assertIsInstance(plugins.create_instance('test-widget', 3), SmallWidget)
            self.assertIsInstance(plugins.create_instance('test-widget', 30), AnyWidget)
            self.assertIsInstance(plugins.create_instance('test-widget', 3, name='any'),
                                  AnyWidget)
            self.assertIsNone(plugins.create_instance('test-widget', 30, name='small'))

        self.assertEqual(plugins.get_plugins('test-widget'), [])
        self.assertIsNone(plugins.create_instance('test-widget', 3))

    def test_register_twice(self):
        first = plugins.register_plugin('test-gadget', 'g', 'gadget', AnyWidget.create_instance)
        second = plugins.register_plugin('test-gadget', 'g', 'gadget', AnyWidget.create_instance)
        self.assertIs(first, second)
        self.assertEqual(len(plugins.get_plugins('test-gadget')), 1)
        self.assertTrue(plugins.unregister_plugin('test-gadget', AnyWidget.create_instance))
        self.assertFalse(plugins.unregister_plugin('test-gadget', AnyWidget.create_instance))

    def test_terminate_in_reverse_order(self):
        with plugins.PluginRegistryContext(First, Second):
            self.assertEqual(Recorder.log, [('init', 'First'), ('init', 'Second')])
        self.assertEqual(Recorder.log[2:], [('term', 'Second'), ('term', 'First')])

    def test_terminate_on_error(self):
        with self.assertRaises(ValueError):
            with plugins.PluginRegistryContext(First, Second):
                raise ValueError('oops')
        self.assertEqual(Recorder.log[2:], [('term', 'Second'), ('term', 'First')])

    def test_failed_initialize_unwinds(self):
        with self.assertRaises(RuntimeError):
            with plugins.PluginRegistryContext(First, Broken, Second):
                pass
        self.assertEqual(Recorder.log, [('init', 'First'), ('term', 'First')])

    def test_default_plugins(self):
        defaults = plugins.load_default_plugins()
        self.assertEqual(defaults, [type_system.ExtendedTypeSystem,
                                    symbol_file.SymbolFileWasmDWARF,
                                    stack.WasmProcess])

        plugins.initialize_default_plugins()
        plugins.initialize_default_plugins()
        self.assertEqual(len(plugins.get_plugins('symbol-file')), 1)
        self.assertEqual(plugins.find_plugin('symbol-file', 'wasm_dwarf').description,
                         'Wasm DWARF')
        self.assertEqual(plugins.find_plugin('type-system', 'wasm-clang-extended').description,
                         'clang base AST context plug-in (with extended rust support)')

        plugins.terminate_default_plugins()
        self.assertIsNone(plugins.find_plugin('symbol-file', 'wasm_dwarf'))
        plugins.initialize_default_plugins()
        self.assertIsNotNone(plugins.find_plugin('process', 'wasm32'))

    def test_default_type_system_factory(self):
        self.assertIs(type(type_system.ExtendedTypeSystem.create_instance(None)),
                      types.TypeSystem)


if __name__ == "__main__":
    unittest.main(verbosity=2)
