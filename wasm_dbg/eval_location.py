# (c) Copyright 2023 Aaron Kimball
#
# Stack machine to evaluate location info from DWARF DW_AT_location bytecode.
#
# The expression is decoded byte-by-byte from a stream (rather than pre-parsed into opcode
# objects) so that vendor opcodes, whose operand layout only the symbol file understands,
# can consume their own operands, and so that DW_OP_skip / DW_OP_bra can jump.

import io

from elftools.common.exceptions import ELFParseError
from elftools.common.utils import struct_parse
from elftools.dwarf.structs import DWARFStructs


class ExprFlags(object):
    """
    Flags that provide info about the result returned by eval() or access().
    """

    # Top level messages.
    OK                      =     0x1     # Successfully produced a value.

    # Error codes
    ERR_NO_LOCATION         =    0x10     # No location data available.

    # Information about how the location was calculated.
    MULTIPART               =  0x1000     # The address is in multiple pieces
    IMPLICIT_VALUE          =  0x2000     # DW_OP_stack_value; the result is the value itself.
    CONST_ADDR              =  0x8000     # Address provided by DW_OP_addr
    TARGET_VALUE            = 0x10000     # Value loaded from wasm local/global/operand storage.

    ERRORS_MASK             =    0xF0     # Errors fit under this mask

    @staticmethod
    def successful(flags):
        """
        Return True for any successful response.
        """
        return (flags & ExprFlags.OK) != 0

    @staticmethod
    def has_errors(flags):
        return (flags & ExprFlags.ERRORS_MASK) != 0

    @staticmethod
    def get_message(flags):
        """
        Return a formatted user-friendly message about errors encountered.
        """
        if flags & ExprFlags.ERR_NO_LOCATION:
            return '(No location data)'
        return ''


class DWARFExprError(Exception):
    """ The location expression could not be evaluated. """
    pass


class Scalar(object):
    """
    A value that lives on the expression stack itself rather than at a memory address.

    Vendor opcodes that fetch values out of wasm storage push one of these; ordinary
    arithmetic unwraps it to its numeric value.
    """

    def __init__(self, value, encoding=None):
        self.value = value
        self.encoding = encoding  # e.g. 'i32', 'f64'; None if unknown.

    def __eq__(self, other):
        return isinstance(other, Scalar) and self.value == other.value and \
            self.encoding == other.encoding

    def __hash__(self):
        return hash((self.value, self.encoding))

    def __repr__(self):
        if self.encoding:
            return f'Scalar({self.encoding} {self.value!r})'
        return f'Scalar({self.value!r})'


class DWARFExprMachine(object):
    """
    Stack machine to evaluate a DWARF expression to a location.

    Usage:
        dem = DWARFExprMachine(expr_bytes, backend, symbol_file, memory)
        pieces, flags = dem.eval()

    pieces is a list of (location, size) tuples. If the value is spread over multiple
    locations this says how many bytes to fetch from each. If the result is in a single
    contiguous location, size=DWARFExprMachine.ALL.

    Depending on the operations performed, 'location' may be:
        int    - A linear-memory address you should access to get the variable's value.
        Scalar - The value itself, loaded from wasm storage by a vendor opcode or
                 marked by DW_OP_stack_value ahead of a DW_OP_piece.
        str    - DWARFExprMachine.TOP (DW_OP_stack_value with no piece following).

    Or instead of `dem.eval()`, use `dem.access(size=n)` to directly retrieve the value.

    Opcodes this machine does not know are offered to `symbol_file.parse_vendor_opcode()`
    before being rejected.
    """

    # Dispatch table from opcode to method.
    __dispatch = None

    # Architecture-specific properties
    __structs = None            # pyelftools DWARFStructs for operand decoding.
    __addr_size = None          # Address size in bytes
    __word_len = None           # Default access width.
    __byteorder = None

    ALL = -1                # 'size' for degenerate 'piece' instruction to get the entire result.
    TOP = '__dw_stack_top'  # location for access() to use to grab from top-of-stack.

    # Opcode -> DWARFStructs field used to decode the constant operand.
    __const_operands = {
        0x08: 'Dwarf_uint8',    # DW_OP_const1u
        0x09: 'Dwarf_int8',     # DW_OP_const1s
        0x0a: 'Dwarf_uint16',   # DW_OP_const2u
        0x0b: 'Dwarf_int16',    # DW_OP_const2s
        0x0c: 'Dwarf_uint32',   # DW_OP_const4u
        0x0d: 'Dwarf_int32',    # DW_OP_const4s
        0x0e: 'Dwarf_uint64',   # DW_OP_const8u
        0x0f: 'Dwarf_int64',    # DW_OP_const8s
        0x10: 'Dwarf_uleb128',  # DW_OP_constu
        0x11: 'Dwarf_sleb128',  # DW_OP_consts
    }

    def __init__(self, expr, backend, symbol_file=None, memory=None, initial_stack=None):
        # Handle one-time setups for evaluation environment, if needed.
        if DWARFExprMachine.__dispatch is None:
            DWARFExprMachine.__init_dispatch()
        if DWARFExprMachine.__structs is None:
            # Set this up as a class value; assume arch is constant until hard_reset_state().
            DWARFExprMachine.__addr_size = backend.get_arch_conf('ret_addr_size') or 4
            DWARFExprMachine.__word_len = backend.get_arch_conf('push_word_len') or 4
            DWARFExprMachine.__byteorder = backend.get_arch_conf('endian') or 'little'
            DWARFExprMachine.__structs = DWARFStructs(
                little_endian=(DWARFExprMachine.__byteorder == 'little'),
                dwarf_format=32,
                address_size=DWARFExprMachine.__addr_size)

        self.expr = bytes(expr or b'')      # Raw DWARF expression bytes to evaluate.
        self._backend = backend
        self._symbol_file = symbol_file     # Handles vendor opcodes, if any.
        self._memory = memory               # stack.MemoryReader for linear memory access.
        self.stack = list(initial_stack or [])
        self._pieces = []
        self._implicit_value = False        # DW_OP_stack_value seen; not yet claimed by a piece.
        self._frame_base = None             # Expression bytes for the enclosing DW_AT_frame_base.
        self._flags = 0

    def setFrameBase(self, frame_base_expr):
        self._frame_base = frame_base_expr

    def eval(self):
        """
        Evaluate the bytecode program to resolve the location.

        Returns a list of locations and piece-widths where the data is held, and an int
        of bitflags (from ExprFlags) describing the location-resolution process.
        """
        self._flags = 0
        self._pieces = []
        self._implicit_value = False

        if not len(self.expr):
            return [], ExprFlags.ERR_NO_LOCATION

        stream = io.BytesIO(self.expr)
        end = len(self.expr)
        while stream.tell() < end:
            op = self._operand(stream, 'Dwarf_uint8')
            func = DWARFExprMachine.__dispatch.get(op)
            if func is not None:
                self._backend.verboseprint(f'Processing opcode 0x{op:02x}')
                func(self, op, stream)
            elif self._symbol_file is not None and \
                    self._symbol_file.parse_vendor_opcode(op, stream, self.stack):
                self._backend.verboseprint(f'Processed vendor opcode 0x{op:02x}')
            else:
                self._unimplemented_op(op, stream)

        self._flags |= ExprFlags.OK
        if len(self._pieces):
            self._backend.verboseprint(f'Resolved to set of pieces: {self._pieces}')
            if len(self._pieces) > 1:
                self._flags |= ExprFlags.MULTIPART
            return self._pieces, self._flags

        if not len(self.stack):
            raise DWARFExprError('Expression left no result on the stack')

        if self._implicit_value:
            return [(DWARFExprMachine.TOP, DWARFExprMachine.ALL)], self._flags

        out = self.top()
        if isinstance(out, Scalar):
            self._flags |= ExprFlags.TARGET_VALUE
            self._backend.verboseprint(f'Resolved value: {out}')
        elif isinstance(out, int):
            self._backend.verboseprint(f'Resolved address: 0x{out:08x}')
        return [(out, DWARFExprMachine.ALL)], self._flags

    def _read_piece(self, location, size):
        if location == DWARFExprMachine.TOP:
            # DW_OP_stack_value: the top of the stack is the value, not its address.
            val = self.top()
            if val is None:
                raise DWARFExprError('DW_OP_stack_value with an empty stack')
            if isinstance(val, Scalar):
                return val.value
            return val

        if isinstance(location, Scalar):
            return location.value
        elif isinstance(location, int):
            return self.mem(location, size)
        else:
            raise DWARFExprError(f"Unknown how to dereference {location.__class__}: {location!r}")

    def access(self, size=None, typ=None):
        """
        Evaluate the bytecode program to resolve the location. Then get the result at that location.
        Returns the value and the flags associated with identifying its location.

        If neither a size nor a type is given, a word is read.
        """
        (pieces, flags) = self.eval()
        if ExprFlags.has_errors(flags):
            return None, flags

        if size is None and typ is not None:
            size = typ.size
        if size is None:
            size = DWARFExprMachine.__word_len

        if len(pieces) == 1:
            (location, piece_size) = pieces[0]
            if piece_size == DWARFExprMachine.ALL:
                piece_size = size
            return self._read_piece(location, piece_size), flags

        # Multi-piece values are assembled least-significant piece first.
        out = 0
        shift = 0
        for (location, piece_size) in pieces:
            if piece_size == DWARFExprMachine.ALL:
                raise DWARFExprError(f'Piece at {location!r} has no size in a composite location')
            val = self._read_piece(location, piece_size)
            if not isinstance(val, int):
                raise DWARFExprError(f'Cannot assemble non-integer piece {val!r}')
            mask = (1 << (8 * piece_size)) - 1
            out |= (val & mask) << shift
            shift += 8 * piece_size
        return out, flags

    def _unimplemented_op(self, op, stream):
        raise DWARFExprError(f"Unimplemented DWARF expr op 0x{op:02x} at offset {stream.tell() - 1}")

    def _operand(self, stream, field_name):
        """ Decode one operand of the given DWARFStructs field type from the stream. """
        field = getattr(DWARFExprMachine.__structs, field_name)
        try:
            return struct_parse(field(''), stream)
        except ELFParseError as e:
            raise DWARFExprError(f'Truncated DWARF expression: {e}') from e

    def _addr(self, op, stream):
        self._flags |= ExprFlags.CONST_ADDR
        self.push(self._operand(stream, 'Dwarf_target_addr'))

    def _const(self, op, stream):
        self.push(self._operand(stream, DWARFExprMachine.__const_operands[op]))

    def _deref(self, op, stream):
        addr = self.pop()
        self.push(self.mem(addr, DWARFExprMachine.__addr_size))

    def _deref_size(self, op, stream):
        size = self._operand(stream, 'Dwarf_uint8')
        addr = self.pop()
        self.push(self.mem(addr, size))

    def _dup(self, op, stream):
        self.push(self.top())

    def _drop(self, op, stream):
        self._pop_raw()

    def _over(self, op, stream):
        self.push(self.at_stack(1))

    def _pick(self, op, stream):
        self.push(self.at_stack(self._operand(stream, 'Dwarf_uint8')))

    def _swap(self, op, stream):
        fst = self._pop_raw()
        snd = self._pop_raw()
        self.push(fst)
        self.push(snd)

    def _rot(self, op, stream):
        fst = self._pop_raw()
        snd = self._pop_raw()
        trd = self._pop_raw()

        self.push(fst)
        self.push(trd)
        self.push(snd)

    def _abs(self, op, stream):
        self.push(abs(self.pop()))

    def _and(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(fst & snd)

    def _div(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        if fst == 0:
            raise DWARFExprError('Division by zero in DW_OP_div')
        # DW_OP_div is signed division that truncates toward zero.
        quot = abs(snd) // abs(fst)
        if (snd < 0) != (fst < 0):
            quot = -quot
        self.push(quot)

    def _minus(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(snd - fst)

    def _mod(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        if fst == 0:
            raise DWARFExprError('Division by zero in DW_OP_mod')
        self.push(snd % fst)

    def _mul(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(snd * fst)

    def _neg(self, op, stream):
        self.push(-self.pop())

    def _not(self, op, stream):
        self.push(~self.pop())

    def _or(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(snd | fst)

    def _plus(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(snd + fst)

    def _plus_uconst(self, op, stream):
        base = self.pop()
        self.push(base + self._operand(stream, 'Dwarf_uleb128'))

    def _shl(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(snd << fst)

    def _shr(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        # Logical right shift: treat snd as an unsigned address-width value.
        unsigned_snd = snd % (1 << (DWARFExprMachine.__addr_size * 8))
        self.push(unsigned_snd >> fst)

    def _shra(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(snd >> fst)

    def _xor(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        self.push(snd ^ fst)

    def _compare(self, op, stream):
        fst = self.pop()
        snd = self.pop()
        if op == 0x29:
            result = snd == fst
        elif op == 0x2a:
            result = snd >= fst
        elif op == 0x2b:
            result = snd > fst
        elif op == 0x2c:
            result = snd <= fst
        elif op == 0x2d:
            result = snd < fst
        else:
            result = snd != fst
        self.push(1 * result)

    def _jump(self, stream, delta):
        target = stream.tell() + delta
        if target < 0 or target > len(self.expr):
            raise DWARFExprError(f'Branch target {target} outside of expression')
        stream.seek(target)

    def _skip(self, op, stream):
        self._jump(stream, self._operand(stream, 'Dwarf_int16'))

    def _bra(self, op, stream):
        delta = self._operand(stream, 'Dwarf_int16')
        if self.pop() != 0:
            self._jump(stream, delta)

    def _piece(self, op, stream):
        # The location (or, after DW_OP_stack_value, the value) on top of the stack
        # is the next N bytes of the result.
        size = self._operand(stream, 'Dwarf_uleb128')
        location = self._pop_raw()
        if self._implicit_value and not isinstance(location, Scalar):
            location = Scalar(location)
        self._implicit_value = False
        self._pieces.append((location, size))

    def _nop(self, op, stream):
        pass

    def _literal(self, op, stream):
        """ lit0 .. lit31 op - Push the literal constant value 0...31 """
        self.push(op - 0x30)

    def _fbreg(self, op, stream):
        offset = self._operand(stream, 'Dwarf_sleb128')
        if self._frame_base is None:
            raise DWARFExprError("Cannot evaluate DW_OP_fbreg; missing/invalid DW_AT_frame_base in scope")

        sub_machine = DWARFExprMachine(self._frame_base, self._backend, self._symbol_file,
                                       self._memory)
        (fb_value, _) = sub_machine.access()
        self.push(fb_value + offset)

    def _stack_value(self, op, stream):
        # The value at this logical location is currently at stack.top(). (DWARF v4)
        self._flags |= ExprFlags.IMPLICIT_VALUE
        self._implicit_value = True

    def _call_frame_cfa(self, op, stream):
        raise DWARFExprError('Canonical frame address is not available for wasm frames')

    ### Stack operations ###

    def top(self):
        """ return top item on the stack. """
        if not len(self.stack):
            return None

        return self.stack[-1]

    def at_stack(self, n):
        """ return item at position 'n'. 0 is the top of the stack, 1 is just below that, etc. """
        if n >= len(self.stack):
            raise DWARFExprError(f'Stack index {n} out of range (depth={len(self.stack)})')
        return self.stack[-(n + 1)]

    def _pop_raw(self):
        if not len(self.stack):
            raise DWARFExprError('Pop from empty DWARF expression stack')
        return self.stack.pop()

    def pop(self):
        """ pop top item from stack, unwrapping Scalars to their numeric value. """
        val = self._pop_raw()
        if isinstance(val, Scalar):
            return val.value
        return val

    def push(self, v):
        self.stack.append(v)

    ### Target interaction ###

    def mem(self, addr, size=1):
        """
        Get the value contained in linear memory at the specified address.
        """
        if self._memory is None:
            raise DWARFExprError(f'No process memory available to read address 0x{addr:08x}')
        self._backend.verboseprint(f'Reading {size} bytes at addr 0x{addr:08x}')
        data = self._memory.read_memory(addr, size)
        return int.from_bytes(data, DWARFExprMachine.__byteorder)

    ### Setup ###

    @classmethod
    def __init_dispatch(cls):
        """
        Initialize the opcode dispatch table the first time we're used.
        """
        d = {
            0x03: cls._addr, # DW_OP_addr
            0x06: cls._deref, # DW_OP_deref
            0x12: cls._dup, # DW_OP_dup
            0x13: cls._drop, # DW_OP_drop
            0x14: cls._over, # DW_OP_over
            0x15: cls._pick, # DW_OP_pick
            0x16: cls._swap, # DW_OP_swap
            0x17: cls._rot, # DW_OP_rot
            0x19: cls._abs, # DW_OP_abs
            0x1a: cls._and, # DW_OP_and
            0x1b: cls._div, # DW_OP_div
            0x1c: cls._minus, # DW_OP_minus
            0x1d: cls._mod, # DW_OP_mod
            0x1e: cls._mul, # DW_OP_mul
            0x1f: cls._neg, # DW_OP_neg
            0x20: cls._not, # DW_OP_not
            0x21: cls._or, # DW_OP_or
            0x22: cls._plus, # DW_OP_plus
            0x23: cls._plus_uconst, # DW_OP_plus_uconst
            0x24: cls._shl, # DW_OP_shl
            0x25: cls._shr, # DW_OP_shr
            0x26: cls._shra, # DW_OP_shra
            0x27: cls._xor, # DW_OP_xor
            0x28: cls._bra, # DW_OP_bra
            0x2f: cls._skip, # DW_OP_skip
            0x91: cls._fbreg, # DW_OP_fbreg
            0x93: cls._piece, # DW_OP_piece
            0x94: cls._deref_size, # DW_OP_deref_size
            0x96: cls._nop, # DW_OP_nop
            0x9c: cls._call_frame_cfa, # DW_OP_call_frame_cfa
            0x9f: cls._stack_value, # DW_OP_stack_value
        }

        for const_op in cls.__const_operands:
            d[const_op] = cls._const

        for cmp_op in range(0x29, 0x2f):
            d[cmp_op] = cls._compare # DW_OP_eq .. DW_OP_ne

        # Add lit0..lit31 to mappings. Wasm frames have no DWARF registers, so reg* and
        # breg* fall through to _unimplemented_op().
        for i in range(0, 32):
            d[i + 0x30] = cls._literal

        cls.__dispatch = d

    @classmethod
    def hard_reset_state(cls):
        """
        Flush class-level initializations and require refresh for next use.
        """
        cls.__dispatch = None
        cls.__structs = None
        cls.__word_len = None
        cls.__addr_size = None
        cls.__byteorder = None
