# (C) Copyright 2023 Aaron Kimball
#
# Process, thread, register and unwind model for a paused wasm instance.
#
# The runtime only tells us the code offset of the current frame, so the model is a single
# synthetic frame whose one register, PC, holds that offset. Memory reads go to the proxy.

import wasm_dbg.plugins as plugins
import wasm_dbg.proxy as proxy
from wasm_dbg.term import MsgLevel

INVALID_ADDRESS = 0xFFFFFFFFFFFFFFFF

WASM32_ARCH = 'wasm32'


class MemoryReadError(Exception):
    """ Linear memory could not be read. """
    pass


class MemoryReader(object):
    """
    Capability: read bytes of the target's linear memory.
    """

    def read_memory(self, address, size):
        """
        @return `size` bytes starting at `address`.
        @raise MemoryReadError on failure.
        """
        raise NotImplementedError()


class WasmRegisters(object):
    """
    Register context with a single read-only 4-byte register, PC, holding the frame offset.
    """

    PC = 'PC'
    PC_SIZE = 4

    def __init__(self, frame_offset):
        self._frame_offset = frame_offset

    def get_register_names(self):
        return [WasmRegisters.PC]

    def get_register_count(self):
        return 1

    def get_register_size(self, name):
        if name != WasmRegisters.PC:
            raise KeyError(f'No register {name}')
        return WasmRegisters.PC_SIZE

    def read_register(self, name):
        if name != WasmRegisters.PC:
            raise KeyError(f'No register {name}')
        return self._frame_offset

    def write_register(self, name, value):
        """ Registers are read-only; returns False. """
        return False

    def as_dict(self):
        """ Register values as the {name: value} map a DWARFExprMachine expects. """
        return { WasmRegisters.PC: self._frame_offset }

    def byte_order(self):
        return 'little'


class WasmUnwind(object):
    """
    Unwinder for the synthetic frame: exactly one frame, with no canonical frame address.
    """

    def __init__(self, frame_offset):
        self._frame_offset = frame_offset

    def get_frame_count(self):
        return 1

    def get_frame_info_at_index(self, frame_idx):
        """
        @return (cfa, pc, behaves_like_zeroth_frame) or None if there is no such frame.
        """
        if frame_idx != 0:
            return None
        return (INVALID_ADDRESS, self._frame_offset, True)


class CallFrame(object):
    """
    The one frame of a paused wasm thread.
    """

    def __init__(self, thread, frame_offset):
        self.thread = thread
        self.addr = frame_offset  # $PC, as an offset into the code section.
        self.cfa = INVALID_ADDRESS
        self.registers = WasmRegisters(frame_offset)

    def get_cfa(self):
        return self.cfa

    def __repr__(self):
        return f'#0 {self.addr:08x}'


class WasmThread(object):
    """
    The paused thread of a wasm instance. Its frame and register context are created once
    and cached.
    """

    def __init__(self, process, tid, frame_offset):
        self.process = process
        self.tid = tid
        self._frame_offset = frame_offset
        self._unwinder = None
        self._frame = None

    def get_unwinder(self):
        if self._unwinder is None:
            self._unwinder = WasmUnwind(self._frame_offset)
        return self._unwinder

    def get_frame(self, frame_idx=0):
        if frame_idx != 0:
            return None
        if self._frame is None:
            self._frame = CallFrame(self, self._frame_offset)
        return self._frame

    def get_register_context(self):
        return self.get_frame().registers

    def refresh_state_after_stop(self):
        self._unwinder = None
        self._frame = None

    def __repr__(self):
        return f'thread {self.tid} @ {self._frame_offset:08x}'


@plugins.plugin('process', WASM32_ARCH, 'wasm32 process')
class WasmProcess(MemoryReader):
    """
    A paused wasm instance reached through a DebuggerProxy.
    """

    def __init__(self, backend):
        self._backend = backend
        self._proxy = None
        self._frame_offset = 0
        self._threads = []

    @staticmethod
    def create_instance(backend, arch_name):
        if not WasmProcess.can_debug(arch_name):
            return None
        return WasmProcess(backend)

    @staticmethod
    def can_debug(arch_name):
        return arch_name == WASM32_ARCH

    def set_proxy_and_frame_offset(self, debugger_proxy, frame_offset):
        self._proxy = debugger_proxy
        self._frame_offset = frame_offset
        self.update_thread_list()

    def get_proxy(self):
        return self._proxy

    def get_frame_offset(self):
        return self._frame_offset

    def update_thread_list(self):
        """
        Rebuild the thread list: one thread while paused at a nonzero frame offset, else none.
        """
        self._threads = []
        if self._frame_offset > 0:
            self._threads.append(WasmThread(self, 1, self._frame_offset))
        return self._threads

    def get_threads(self):
        return list(self._threads)

    def read_memory(self, address, size):
        if self._proxy is None:
            raise MemoryReadError('Proxy not initialized')

        try:
            return self._proxy.read_memory(address, size)
        except proxy.DebuggerProxyError as e:
            self._backend.msg_q(MsgLevel.ERR, f'Memory read at 0x{address:08x} failed: {e}')
            raise MemoryReadError(str(e)) from e
