# (c) Copyright 2023 Aaron Kimball
#
# Symbol file over the DWARF sections of a wasm module.
#
# Besides type lookup, it evaluates the wasm vendor location opcodes. A location like
# "local #3 of the current frame" can't be turned into an address; the value must be fetched
# from the paused runtime. That's the job of a WasmValueLoader, and exactly one may be active
# per symbol file while a location expression is evaluated.

from elftools.common.exceptions import ELFParseError
from elftools.common.utils import struct_parse
from elftools.dwarf.structs import DWARFStructs
from sortedcontainers import SortedDict

import wasm_dbg.dwarf_walk as dwarf_walk
import wasm_dbg.eval_location as el
import wasm_dbg.plugins as plugins
import wasm_dbg.proxy as proxy
import wasm_dbg.types as types
from wasm_dbg.term import MsgLevel

DW_OP_WASM_location = 0xed
DW_OP_WASM_location_int = 0xee

_WASM_LOCATION_OPS = (DW_OP_WASM_location, DW_OP_WASM_location_int)

# Wasm is little endian with 32-bit linear memory addresses.
_WASM_STRUCTS = DWARFStructs(little_endian=True, dwarf_format=32, address_size=4)

_INDEXED_TYPE_TAGS = types.RECORD_TAGS + (
    'DW_TAG_base_type',
    'DW_TAG_enumeration_type',
    'DW_TAG_typedef',
)


def _is_indexed_scope(tag):
    return tag == 'DW_TAG_namespace' or tag in _INDEXED_TYPE_TAGS


class WasmValueLoadError(Exception):
    """ A value could not be loaded from wasm storage. """
    pass


class WasmValueLoader(object):
    """
    Fetches the values named by DW_OP_WASM_location operands.

    Use as a context manager: entering installs the loader as the one active loader of its
    symbol file, and leaving (by any path) removes it.

        with ProxyValueLoader(symbol_file, debugger_proxy):
            value, flags = machine.access()

    Entering while another loader is active raises AssertionError.
    """

    def __init__(self, symbol_file):
        self._symbol_file = symbol_file

    def __enter__(self):
        self._symbol_file.set_value_loader(self)
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self._symbol_file.clear_value_loader(self)
        return False

    def load_wasm_value(self, storage_type, stream):
        """
        Decode the rest of a DW_OP_WASM_location operand from `stream` and fetch the value.

        @param storage_type the storage-kind byte that followed the opcode.
        @param stream positioned at the storage-kind-specific operand bytes.
        @return a proxy.WasmValue
        @raise WasmValueLoadError if the operand can't be decoded or the value fetched.
        """
        raise NotImplementedError()


class ProxyValueLoader(WasmValueLoader):
    """
    WasmValueLoader that fetches values through a DebuggerProxy.
    """

    STORAGE_LOCAL = 0           # ULEB128 local index
    STORAGE_GLOBAL_FIXED = 1    # u32 global index (patchable by relocation)
    STORAGE_OPERAND = 2         # ULEB128 operand stack depth
    STORAGE_GLOBAL = 3          # ULEB128 global index

    def __init__(self, symbol_file, debugger_proxy):
        super().__init__(symbol_file)
        self._proxy = debugger_proxy

    def _read_index(self, stream, field):
        try:
            return struct_parse(field(''), stream)
        except ELFParseError as e:
            raise WasmValueLoadError(f'Truncated wasm storage index: {e}') from e

    def load_wasm_value(self, storage_type, stream):
        if storage_type == ProxyValueLoader.STORAGE_GLOBAL_FIXED:
            index = self._read_index(stream, _WASM_STRUCTS.Dwarf_uint32)
        elif storage_type in (ProxyValueLoader.STORAGE_LOCAL, ProxyValueLoader.STORAGE_OPERAND,
                              ProxyValueLoader.STORAGE_GLOBAL):
            index = self._read_index(stream, _WASM_STRUCTS.Dwarf_uleb128)
        else:
            raise WasmValueLoadError(f'Unknown wasm storage type {storage_type}')

        try:
            if storage_type == ProxyValueLoader.STORAGE_LOCAL:
                return self._proxy.get_wasm_local(index)
            elif storage_type == ProxyValueLoader.STORAGE_OPERAND:
                return self._proxy.get_wasm_op(index)
            else:
                return self._proxy.get_wasm_global(index)
        except proxy.DebuggerProxyError as e:
            raise WasmValueLoadError(str(e)) from e


@plugins.plugin('symbol-file', 'wasm_dwarf', 'Wasm DWARF')
class SymbolFileWasmDWARF(object):
    """
    DWARF symbols for a wasm module: named-type lookup, the externref_t type override, and
    evaluation of the wasm vendor location opcodes.
    """

    EXTERNREF_TYPE_NAME = 'externref_t'
    EXTERNREF_BYTE_SIZE = 4

    def __init__(self, backend, objfile, type_system=None):
        self._backend = backend
        self._objfile = objfile
        self._dwarf_info = None
        self._type_system = type_system
        self._type_die_index = None     # qualified name -> DIE, built on first lookup.
        self._value_loader = None       # The active WasmValueLoader, if any.
        self._externref_type = None

    @staticmethod
    def create_instance(backend, objfile):
        """
        Plugin factory: only modules that carry DWARF sections get a symbol file.
        """
        if objfile is None or not objfile.has_dwarf_info():
            return None
        return SymbolFileWasmDWARF(backend, objfile)

    def get_objfile(self):
        return self._objfile

    def get_dwarf_info(self):
        if self._dwarf_info is None and self._objfile is not None:
            self._dwarf_info = self._objfile.get_dwarf_info()
        return self._dwarf_info

    def get_type_system(self):
        if self._type_system is None:
            self._type_system = plugins.create_instance(
                'type-system', self._backend, language=None, module=self._objfile)
            if self._type_system is None:
                self._type_system = types.TypeSystem(self._backend)
        return self._type_system

    ###### Value loader slot

    def get_value_loader(self):
        return self._value_loader

    def set_value_loader(self, loader):
        if self._value_loader is not None:
            raise AssertionError('Cannot nest wasm eval contexts')
        self._value_loader = loader

    def clear_value_loader(self, loader):
        if self._value_loader is loader:
            self._value_loader = None

    def parse_vendor_opcode(self, op, stream, stack):
        """
        Evaluate a vendor opcode on behalf of a DWARFExprMachine.

        @return False if `op` isn't one of ours. Otherwise the loaded value is pushed onto
            `stack` as an eval_location.Scalar and this returns True.
        @raise DWARFExprError if no loader is active or the loader fails.
        """
        if op not in _WASM_LOCATION_OPS:
            return False

        loader = self._value_loader
        if loader is None:
            self._backend.msg_q(MsgLevel.ERR,
                                f'DW_OP_WASM_location (0x{op:02x}) needs an active wasm value loader')
            raise el.DWARFExprError('No wasm value loader is active')

        try:
            storage_type = struct_parse(_WASM_STRUCTS.Dwarf_uint8(''), stream)
        except ELFParseError as e:
            raise el.DWARFExprError('Truncated DW_OP_WASM_location operand') from e

        try:
            value = loader.load_wasm_value(storage_type, stream)
        except WasmValueLoadError as e:
            self._backend.msg_q(MsgLevel.ERR, f'Error loading wasm value: {e}')
            raise el.DWARFExprError(f'Could not load wasm value: {e}') from e

        stack.append(el.Scalar(value.value, value.type))
        return True

    ###### Types

    def _index_scope(self, die, prefix, index):
        for child in dwarf_walk.iter_children_by_tag(die, _is_indexed_scope):
            name = dwarf_walk.die_name(child)
            if not name:
                continue

            qualified = prefix + name
            if child.tag == 'DW_TAG_namespace':
                self._index_scope(child, qualified + '::', index)
                continue

            if not dwarf_walk.die_attr(child, 'DW_AT_declaration') and qualified not in index:
                index[qualified] = child
            if child.tag in types.RECORD_TAGS:
                self._index_scope(child, qualified + '::', index)

    def _get_type_die_index(self):
        if self._type_die_index is None:
            self._type_die_index = SortedDict()
            dwarf_info = self.get_dwarf_info()
            if dwarf_info is not None:
                for cu in dwarf_info.iter_CUs():
                    self._index_scope(cu.get_top_DIE(), '', self._type_die_index)
            self._backend.verboseprint('Indexed ', len(self._type_die_index), ' named types')
        return self._type_die_index

    def type_names(self, prefix=None):
        """
        Iterator over the qualified names of all defined types, optionally filtered by prefix.
        """
        index = self._get_type_die_index()
        if not prefix:
            return iter(index.irange())
        nextfix = prefix[0:-1] + chr(ord(prefix[-1]) + 1)
        return index.irange(prefix, nextfix, inclusive=(True, False))

    def find_definition_type_for_decl_context(self, decl_ctx):
        """
        Find the type whose declaration context is `decl_ctx`, a list of names from the
        innermost outward (['Dog', 'Animal'] for Animal::Dog).

        'externref_t' always maps to one synthesized 4-byte unsigned type, regardless of
        what the debug info says.
        """
        if not decl_ctx:
            return None

        if decl_ctx[0] == SymbolFileWasmDWARF.EXTERNREF_TYPE_NAME:
            if self._externref_type is None:
                self._externref_type = types.PrimitiveType(
                    SymbolFileWasmDWARF.EXTERNREF_TYPE_NAME,
                    SymbolFileWasmDWARF.EXTERNREF_BYTE_SIZE, signed=False)
                self._externref_type.type_system = self.get_type_system()
            return self._externref_type

        qualified = '::'.join(reversed(decl_ctx))
        type_system = self.get_type_system()
        typ = type_system.find_type(qualified)
        if typ is not None:
            return typ

        die = self._get_type_die_index().get(qualified)
        if die is None:
            return None
        return type_system.resolve_type(die)

    def find_type_by_name(self, qualified_name):
        return self.find_definition_type_for_decl_context(
            list(reversed(qualified_name.split('::'))))
