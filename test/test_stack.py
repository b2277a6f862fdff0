#!/usr/bin/env python3
# (c) Copyright 2023 Aaron Kimball

import unittest

import wasm_dbg.stack as stack
from dbg_testcase import *


class TestWasmProcess(DbgTestCase):

    def setUp(self):
        super().setUp()
        self.process = self.backend.get_process()
        self.proxy = proxy.SnapshotProxy(memory=b'\x01\x02\x03\x04', memory_base=0x1000)

    def test_created_for_wasm32(self):
        self.assertIsInstance(self.process, stack.WasmProcess)
        self.assertIs(self.backend.get_process(), self.process)
        self.assertTrue(stack.WasmProcess.can_debug('wasm32'))
        self.assertFalse(stack.WasmProcess.can_debug('avr'))
        self.assertIsNone(stack.WasmProcess.create_instance(self.backend, 'avr'))

    def test_read_without_proxy(self):
        with self.assertRaises(stack.MemoryReadError) as cm:
            self.process.read_memory(0, 4)
        self.assertEqual(str(cm.exception), 'Proxy not initialized')

    def test_read_memory(self):
        self.process.set_proxy_and_frame_offset(self.proxy, 0x40)
        self.assertEqual(self.process.read_memory(0x1001, 2), b'\x02\x03')

        with self.assertRaises(stack.MemoryReadError):
            self.process.read_memory(0x0fff, 2)
        self.assertEqual(len(self.errors()), 1)

    def test_threads(self):
        self.process.set_proxy_and_frame_offset(self.proxy, 0)
        self.assertEqual(self.process.get_threads(), [])

        self.process.set_proxy_and_frame_offset(self.proxy, 0x40)
        threads = self.process.get_threads()
        self.assertEqual(len(threads), 1)
        self.assertEqual(self.process.get_frame_offset(), 0x40)

    def test_frame_and_registers(self):
        self.process.set_proxy_and_frame_offset(self.proxy, 0x1234)
        thread = self.process.get_threads()[0]

        frame = thread.get_frame()
        self.assertIs(thread.get_frame(), frame)
        self.assertIsNone(thread.get_frame(1))
        self.assertEqual(frame.addr, 0x1234)
        self.assertEqual(frame.get_cfa(), stack.INVALID_ADDRESS)

        regs = thread.get_register_context()
        self.assertEqual(regs.get_register_names(), ['PC'])
        self.assertEqual(regs.get_register_count(), 1)
        self.assertEqual(regs.get_register_size('PC'), 4)
        self.assertEqual(regs.read_register('PC'), 0x1234)
        self.assertFalse(regs.write_register('PC', 0))
        self.assertEqual(regs.as_dict(), {'PC': 0x1234})
        self.assertEqual(regs.byte_order(), 'little')
        with self.assertRaises(KeyError):
            regs.read_register('SP')

        thread.refresh_state_after_stop()
        self.assertIsNot(thread.get_frame(), frame)

    def test_unwind(self):
        self.process.set_proxy_and_frame_offset(self.proxy, 0x88)
        unwinder = self.process.get_threads()[0].get_unwinder()
        self.assertEqual(unwinder.get_frame_count(), 1)
        self.assertEqual(unwinder.get_frame_info_at_index(0), (stack.INVALID_ADDRESS, 0x88, True))
        self.assertIsNone(unwinder.get_frame_info_at_index(1))


class TestSnapshotProxy(unittest.TestCase):

    def test_values(self):
        p = proxy.SnapshotProxy(wasm_locals=[('i32', 1), proxy.WasmValue('f32', 0.5)])
        self.assertEqual(p.get_wasm_local(1), proxy.WasmValue('f32', 0.5))
        self.assertEqual(p.get_wasm_local(0).size(), 4)
        with self.assertRaises(proxy.DebuggerProxyError):
            p.get_wasm_global(0)
        with self.assertRaises(proxy.DebuggerProxyError):
            p.get_wasm_op(0)

    def test_bad_value_type(self):
        with self.assertRaises(ValueError):
            proxy.WasmValue('v128', 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
