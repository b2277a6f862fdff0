# (c) Copyright 2023 Aaron Kimball
#
# Interface to the runtime hosting the paused wasm instance: linear memory reads and
# access to wasm locals, globals and the operand stack.


class WasmValue(object):
    """
    A value held in wasm storage, tagged with its wasm value type.
    """

    I32 = 'i32'
    I64 = 'i64'
    F32 = 'f32'
    F64 = 'f64'

    TYPES = (I32, I64, F32, F64)

    # Width in bytes of each value type.
    SIZES = { I32: 4, I64: 8, F32: 4, F64: 8 }

    def __init__(self, value_type, value):
        if value_type not in WasmValue.TYPES:
            raise ValueError(f'Unknown wasm value type {value_type!r}')
        self.type = value_type
        self.value = value

    def size(self):
        return WasmValue.SIZES[self.type]

    def __eq__(self, other):
        return isinstance(other, WasmValue) and self.type == other.type and self.value == other.value

    def __hash__(self):
        return hash((self.type, self.value))

    def __repr__(self):
        return f'{self.type}:{self.value!r}'


class DebuggerProxyError(Exception):
    """ The runtime could not satisfy a request. """
    pass


class DebuggerProxy(object):
    """
    Abstract connection to the runtime. Implementations raise DebuggerProxyError on failure.
    """

    def read_memory(self, address, size):
        """
        @return `size` bytes of linear memory starting at `address`.
        """
        raise NotImplementedError()

    def get_wasm_local(self, index):
        """ @return the WasmValue of local `index` in the current frame. """
        raise NotImplementedError()

    def get_wasm_global(self, index):
        """ @return the WasmValue of global `index`. """
        raise NotImplementedError()

    def get_wasm_op(self, index):
        """ @return the WasmValue at depth `index` of the operand stack. """
        raise NotImplementedError()


class SnapshotProxy(DebuggerProxy):
    """
    DebuggerProxy over a captured snapshot of a paused instance.

    @param memory bytes of linear memory (starting at address `memory_base`).
    @param wasm_locals, wasm_globals, operands lists of WasmValue (or (type, value) pairs).
    """

    def __init__(self, memory=b'', wasm_locals=None, wasm_globals=None, operands=None,
                 memory_base=0):
        self.memory = bytes(memory)
        self.memory_base = memory_base
        self.wasm_locals = self._as_values(wasm_locals)
        self.wasm_globals = self._as_values(wasm_globals)
        self.operands = self._as_values(operands)

    @staticmethod
    def _as_values(values):
        out = []
        for v in values or []:
            if not isinstance(v, WasmValue):
                v = WasmValue(*v)
            out.append(v)
        return out

    def read_memory(self, address, size):
        start = address - self.memory_base
        if start < 0 or size < 0 or start + size > len(self.memory):
            raise DebuggerProxyError(
                f'Memory read of {size} bytes at 0x{address:08x} is out of bounds')
        return self.memory[start:start + size]

    def _lookup(self, values, index, kind):
        if index < 0 or index >= len(values):
            raise DebuggerProxyError(f'No wasm {kind} with index {index}')
        return values[index]

    def get_wasm_local(self, index):
        return self._lookup(self.wasm_locals, index, 'local')

    def get_wasm_global(self, index):
        return self._lookup(self.wasm_globals, index, 'global')

    def get_wasm_op(self, index):
        return self._lookup(self.operands, index, 'operand')
