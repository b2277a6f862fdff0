# (c) Copyright 2023 Aaron Kimball
#
# Program datatypes reconstructed from .debug_info DIEs, and the base type system that
# resolves DIEs to types, completes record types and answers layout queries.

import elftools.dwarf.constants as dwarf_constants
from sortedcontainers import SortedDict

import wasm_dbg.dwarf_walk as dwarf_walk
import wasm_dbg.eval_location as el
from wasm_dbg.term import MsgLevel

PUBLIC = dwarf_constants.DW_ACCESS_public
PROTECTED = dwarf_constants.DW_ACCESS_protected
PRIVATE = dwarf_constants.DW_ACCESS_private

RECORD_TAGS = ('DW_TAG_structure_type', 'DW_TAG_class_type', 'DW_TAG_union_type')

_SIGNED_ENCODINGS = (dwarf_constants.DW_ATE_signed, dwarf_constants.DW_ATE_signed_char)

# Tags whose DIEs contribute a 'Outer::' prefix to the names of types nested within them.
_SCOPE_TAGS = ('DW_TAG_namespace',) + RECORD_TAGS


class PrgmType(object):
    """
    Basic root object for a datatype within the debugged program.

    Types are compared by identity; the type system that created a type owns it and
    any extended info keyed on it.
    """

    def __init__(self, name, size, parent_type=None):
        self.name = name
        self.size = size
        if size is not None and not isinstance(size, int):
            raise TypeError(f'PrgmType.size must be int or None; got type {size.__class__}')
        self._parent_type = parent_type
        self.type_system = None  # Set when registered by a DWARFTypeParser.
        self.language = None     # DW_LANG_* of the CU that defined this type, if known.

    def parent_type(self):
        """
        Return the type underlying this one, if any, or None otherwise.
        """
        return self._parent_type

    def is_pointer(self):
        return False

    def is_record(self):
        """ Return True for struct, class and union types. """
        return False

    def is_complete(self):
        return True

    def __repr__(self):
        return f'{self.name}'


class PrimitiveType(PrgmType):
    """
    A fundamental type in the programming language (u32, f64, bool, etc).
    """

    def __init__(self, name, size, signed=False, encoding=None):
        PrgmType.__init__(self, name, size)
        self.signed = signed
        self.encoding = encoding

    def __repr__(self):
        return self.name


class ConstType(PrgmType):
    """
    A const form of another type
    """
    def __init__(self, base_type):
        PrgmType.__init__(self, f'const {base_type.name}', base_type.size, base_type)

    def is_pointer(self):
        return self.parent_type().is_pointer()


class PointerType(PrgmType):
    """
    A pointer to an item of type T.
    """
    def __init__(self, base_type, addr_size):
        PrgmType.__init__(self, f'{base_type.name}*', addr_size, base_type)

    def is_pointer(self):
        return True


class ReferenceType(PrgmType):
    """
    A reference to an item of type T.
    """
    def __init__(self, base_type, addr_size):
        PrgmType.__init__(self, f'{base_type.name}&', addr_size, base_type)

    def is_pointer(self):
        return True


class EnumType(PrgmType):
    """
    An enumeration of constant->value mappings (a C-like enum with no payloads).
    """

    def __init__(self, enum_name, base_type, size=None):
        if size is None and base_type is not None:
            size = base_type.size
        PrgmType.__init__(self, enum_name, size, base_type)
        self.enum_name = enum_name
        self.enums = {}

    def addEnum(self, token, val):
        self.enums[token] = val

    def nameOf(self, val):
        """
        Return the enum label for the given value.
        """
        for (token, mapval) in self.enums.items():
            if val == mapval:
                return token
        return None

    def __repr__(self):
        mappings = ",\n  ".join([f'{token} = {val}' for (token, val) in self.enums.items()])
        return f'enum {self.enum_name} [size={self.size}] {{\n  {mappings}\n}}'


class ArrayType(PrgmType):
    """
    An array of items.
    """

    def __init__(self, base_type, length=None):
        PrgmType.__init__(self, f'[{base_type.name}]', None, base_type)
        self.setLength(length)

    def setLength(self, length):
        self.length = length
        elem_size = self.parent_type().size
        if length is not None and elem_size is not None:
            self.size = length * elem_size

    def __repr__(self):
        return f'[{self.parent_type()}; {self.length}]'


class AliasType(PrgmType):
    """
    A typedef or other alias.
    """
    def __init__(self, alias, base_type):
        PrgmType.__init__(self, alias, base_type.size, base_type)

    def is_pointer(self):
        return self.parent_type().is_pointer()

    def __repr__(self):
        return f'typedef {self.parent_type().name} {self.name}'


class FunctionType(PrgmType):
    """
    The signature of a function; only ever reached through a pointer.
    """
    def __init__(self, name, return_type=None):
        PrgmType.__init__(self, name, 0, return_type)


class FieldType(PrgmType):
    def __init__(self, field_name, member_of, field_type, offset, accessibility=PUBLIC):
        PrgmType.__init__(self, f'{member_of.name}::{field_name}', field_type.size, field_type)
        self.field_name = field_name
        self.member_of = member_of
        self.offset = offset
        self.accessibility = accessibility

    def __repr__(self):
        if self.accessibility == PROTECTED:
            acc = 'protected '
        elif self.accessibility == PRIVATE:
            acc = 'private '
        else:
            acc = ''

        return f'{acc}{self.field_name}: {self.parent_type().name} ' + \
            f'[size={self.parent_type().size}, offset={self.offset:#x}]'


class ClassType(PrgmType):
    """
    A struct, class or union. Created as a forward reference when its DIE is first resolved;
    fields are filled in when the type system completes it.
    """
    def __init__(self, class_name, size, kind='struct'):
        PrgmType.__init__(self, class_name, size)

        self.class_name = class_name
        self.kind = kind
        self.fields = []
        self.nested_types = []
        self.decl_context = None  # ClassType this one is declared within, if any.
        self._die = None
        self._complete = False

    def is_record(self):
        return True

    def is_complete(self):
        return self._complete

    def mark_complete(self):
        self._complete = True

    def setDIE(self, die):
        self._die = die

    def getDIE(self):
        return self._die

    def addField(self, field_type):
        self.fields.append(field_type)

    def getField(self, fieldName):
        for f in self.fields:
            if f.field_name == fieldName:
                return f
        return None

    def addNestedType(self, typ):
        if typ not in self.nested_types:
            self.nested_types.append(typ)

    def getNestedType(self, name):
        for typ in self.nested_types:
            if typ.name == name or typ.name.endswith('::' + name):
                return typ
        return None

    def __repr__(self):
        s = f'{self.kind} {self.name}'
        if self.parent_type():
            s += f' <subtype of {self.parent_type().name}>'
        s += ' {\n'
        for f in self.fields:
            s += f'  {f};\n'
        s += '}'
        return s


class TypeCompletion(object):
    """
    Capability: fill in a forward-declared record type from its DIE.
    """

    def complete_type_from_dwarf(self, die, typ):
        """
        @return True if `typ` is now complete.
        """
        raise NotImplementedError()


class BitSizeProvider(object):
    """
    Capability: answer how many bits a value of a type occupies.
    """

    def get_bit_size(self, typ, exe_scope=None):
        """
        @return the width in bits, or None if it cannot be determined.
        """
        raise NotImplementedError()


class DWARFTypeParser(TypeCompletion):
    """
    Resolves DIEs to PrgmType objects for one type system and completes record types.

    Types are cached by DIE offset; named types are also indexed by their qualified name.
    """

    def __init__(self, type_system, backend):
        self._type_system = type_system
        self._backend = backend
        self._types = {}                    # DIE offset -> PrgmType
        self._named_types = SortedDict()    # qualified name -> PrgmType
        self._decl_contexts = {}            # DIE offset -> ClassType to declare that type within.
        self.addr_size = backend.get_arch_conf('ret_addr_size') or 4
        self._void = PrimitiveType('void', 0)

    def get_backend(self):
        return self._backend

    def msg_q(self, level, *args):
        self._backend.msg_q(level, *args)

    def types(self, prefix=None):
        """
        Iterator over (name, type) for all named types resolved so far.

        If prefix is specified, returns all type names that begin with 'prefix'.
        """
        if not prefix:
            names = self._named_types.irange()
        else:
            # Increment the last char of the prefix to get the first name after the matching set.
            nextfix = prefix[0:-1] + chr(ord(prefix[-1]) + 1)
            names = self._named_types.irange(prefix, nextfix, inclusive=(True, False))

        for name in names:
            yield (name, self._named_types[name])

    def find_type_by_name(self, name):
        return self._named_types.get(name)

    def type_for_offset(self, offset):
        return self._types.get(offset)

    def link_decl_context_to_die(self, decl_ctx, die):
        """
        Declare that the type defined by `die` lives within the record type `decl_ctx`.
        Takes effect when the DIE is resolved, or immediately if it already has been.
        """
        self._decl_contexts[die.offset] = decl_ctx
        typ = self._types.get(die.offset)
        if typ is not None and typ.is_record() and typ is not decl_ctx and typ.decl_context is None:
            typ.decl_context = decl_ctx
            decl_ctx.addNestedType(typ)

    def resolve_type(self, die):
        """
        Return the PrgmType defined by `die`, creating it on first use.
        Returns None if the DIE does not define a type this parser understands.
        """
        if die is None:
            return None

        typ = self._types.get(die.offset)
        if typ is not None:
            return typ

        if die.offset == self._backend.get_conf('dbg.print_die.offset'):
            self._backend.verboseprint('')
            self._backend.verboseprint(die)

        typ = self._create_type(die)
        if typ is None:
            self._backend.verboseprint(f'No type for DIE {dwarf_walk.format_die_offset(die)} ',
                                       f'with tag {die.tag}')
        return typ

    def _register(self, die, typ, name=None):
        self._types[die.offset] = typ
        if typ.type_system is None:
            typ.type_system = self._type_system
            typ.language = dwarf_walk.cu_language(die)
        if name and name not in self._named_types:
            self._named_types[name] = typ
        return typ

    def _base_type_of(self, die):
        """
        Resolve the DW_AT_type of `die`; a missing or unresolvable reference is void.
        """
        return self.resolve_type(dwarf_walk.die_ref(die, 'DW_AT_type')) or self._void

    def _scope_prefix(self, die):
        """
        Return 'Outer::Inner::' for the namespaces and records enclosing `die`.
        """
        parts = []
        parent = die.get_parent()
        while parent is not None and parent.tag in _SCOPE_TAGS:
            parent_name = dwarf_walk.die_name(parent)
            if parent_name:
                parts.append(parent_name)
            parent = parent.get_parent()

        if not parts:
            return ''
        return '::'.join(reversed(parts)) + '::'

    def _create_type(self, die):
        tag = die.tag
        name = dwarf_walk.die_name(die)

        if tag == 'DW_TAG_base_type':
            encoding = dwarf_walk.die_attr(die, 'DW_AT_encoding')
            size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_byte_size')
            prim = PrimitiveType(name, size, encoding in _SIGNED_ENCODINGS, encoding)
            return self._register(die, prim, name)
        elif tag == 'DW_TAG_unspecified_type':
            return self._register(die, PrimitiveType(name or 'void', 0), name)
        elif tag == 'DW_TAG_const_type':
            return self._register(die, ConstType(self._base_type_of(die)))
        elif tag in ('DW_TAG_volatile_type', 'DW_TAG_restrict_type', 'DW_TAG_atomic_type'):
            # Qualifiers that don't change layout are transparent aliases of their base.
            return self._register(die, self._base_type_of(die))
        elif tag == 'DW_TAG_pointer_type':
            size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_byte_size') or self.addr_size
            return self._register(die, PointerType(self._base_type_of(die), size))
        elif tag in ('DW_TAG_reference_type', 'DW_TAG_rvalue_reference_type'):
            size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_byte_size') or self.addr_size
            return self._register(die, ReferenceType(self._base_type_of(die), size))
        elif tag == 'DW_TAG_typedef':
            qualified = self._scope_prefix(die) + (name or '')
            return self._register(die, AliasType(qualified, self._base_type_of(die)), qualified)
        elif tag == 'DW_TAG_array_type':
            arr = self._register(die, ArrayType(self._base_type_of(die)))
            for subrange in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_subrange_type'):
                count = dwarf_walk.die_attr_unsigned(subrange, 'DW_AT_count')
                upper = dwarf_walk.die_attr_unsigned(subrange, 'DW_AT_upper_bound')
                if count is None and upper is not None:
                    lower = dwarf_walk.die_attr_unsigned(subrange, 'DW_AT_lower_bound') or 0
                    count = upper - lower + 1
                arr.setLength(count)
                break
            return arr
        elif tag == 'DW_TAG_enumeration_type':
            qualified = self._scope_prefix(die) + (name or '')
            base = self.resolve_type(dwarf_walk.die_ref(die, 'DW_AT_type'))
            size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_byte_size')
            enum = self._register(die, EnumType(qualified, base, size), qualified)
            for enumerator in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_enumerator'):
                enum.addEnum(dwarf_walk.die_name(enumerator),
                             dwarf_walk.die_attr(enumerator, 'DW_AT_const_value'))
            return enum
        elif tag == 'DW_TAG_subroutine_type':
            ret = self.resolve_type(dwarf_walk.die_ref(die, 'DW_AT_type'))
            return self._register(die, FunctionType(name or 'fn()', ret))
        elif tag in RECORD_TAGS:
            return self._create_record(die, name)
        else:
            return None

    def _create_record(self, die, name):
        decl_ctx = self._decl_contexts.get(die.offset)
        if name is None:
            qualified = None
        elif decl_ctx is not None:
            qualified = f'{decl_ctx.name}::{name}'
        else:
            qualified = self._scope_prefix(die) + name

        kind = die.tag[len('DW_TAG_'):-len('_type')]
        size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_byte_size')
        record = ClassType(qualified or f'<anonymous {kind}>', size, kind)
        record.setDIE(die)
        if decl_ctx is not None and decl_ctx is not record:
            record.decl_context = decl_ctx
            decl_ctx.addNestedType(record)

        return self._register(die, record, qualified)

    def member_offset(self, member_die):
        """
        Return the byte offset of a data member within its record, or None if not available.

        DW_AT_data_member_location is either a constant or a location expression that assumes
        the object's address is already on the stack; it's evaluated against an initial stack
        of [0] to produce an offset rather than an address.
        """
        attr = member_die.attributes.get('DW_AT_data_member_location')
        if attr is None:
            return None

        val = attr.value
        if isinstance(val, int):
            return val if val >= 0 else None
        if not isinstance(val, (list, bytes, bytearray)):
            return None

        expr_machine = el.DWARFExprMachine(bytes(val), self._backend, initial_stack=[0])
        try:
            (offset_list, flags) = expr_machine.eval()
        except el.DWARFExprError as e:
            self.msg_q(MsgLevel.WARN, 'Error decoding data member location for ',
                       dwarf_walk.format_die_offset(member_die), f': {e}')
            return None

        if not el.ExprFlags.successful(flags):
            return None
        (offset, _) = offset_list[0]
        if not isinstance(offset, int) or offset < 0:
            return None
        return offset

    def complete_type_from_dwarf(self, die, typ):
        """
        Fill in the fields of a record type from the DW_TAG_member children of its DIE.
        Members of nested variant parts are not visited here.
        """
        if not isinstance(typ, ClassType) or die.tag not in RECORD_TAGS:
            return False
        if typ.is_complete():
            return True

        if typ.size is None:
            typ.size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_byte_size')

        for inheritance in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_inheritance'):
            if typ.parent_type() is None:
                typ._parent_type = self.resolve_type(dwarf_walk.die_ref(inheritance, 'DW_AT_type'))

        for member in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_member'):
            field_name = dwarf_walk.die_name(member) or ''
            offset = self.member_offset(member)
            if offset is None:
                if typ.kind != 'union':
                    # Static member declaration; it takes no space in the record.
                    continue
                offset = 0

            field_type = self.resolve_type(dwarf_walk.die_ref(member, 'DW_AT_type'))
            if field_type is None:
                self.msg_q(MsgLevel.WARN, f'Cannot resolve type of field {typ.name}::{field_name} ',
                           f'at {dwarf_walk.format_die_offset(member)}; omitting it.')
                continue

            accessibility = dwarf_walk.die_attr(member, 'DW_AT_accessibility', PUBLIC)
            typ.addField(FieldType(field_name, typ, field_type, offset, accessibility))

        typ.mark_complete()
        return True


class TypeSystem(BitSizeProvider):
    """
    Owns the types parsed out of one module's debug info and answers layout queries about them.
    """

    def __init__(self, backend, language=None):
        self._backend = backend
        self.language = language
        self._dwarf_parser = None
        self._completing = set()    # Types whose completion is in progress.

    def get_backend(self):
        return self._backend

    def _make_dwarf_parser(self):
        return DWARFTypeParser(self, self._backend)

    def get_dwarf_parser(self):
        if self._dwarf_parser is None:
            self._dwarf_parser = self._make_dwarf_parser()
        return self._dwarf_parser

    def resolve_type(self, die):
        return self.get_dwarf_parser().resolve_type(die)

    def find_type(self, name):
        return self.get_dwarf_parser().find_type_by_name(name)

    def types(self, prefix=None):
        return self.get_dwarf_parser().types(prefix)

    def complete_type(self, typ):
        """
        Complete a record type from its DIE. Each type is completed at most once; re-entrant
        requests while completion is underway report success without doing more work.

        @return True if the type is (now) complete.
        """
        if typ is None:
            return False
        if not typ.is_record() or typ.is_complete() or typ in self._completing:
            return True

        die = typ.getDIE()
        if die is None:
            return False

        self._completing.add(typ)
        try:
            return self.get_dwarf_parser().complete_type_from_dwarf(die, typ)
        finally:
            self._completing.discard(typ)

    def get_bit_size(self, typ, exe_scope=None):
        """
        Generic layout: the declared size, else the end of the last field of a record.
        """
        if typ is None:
            return None

        if typ.is_record():
            self.complete_type(typ)

        if typ.size is not None:
            return typ.size * 8

        if typ.is_record() and len(typ.fields):
            ends = [f.offset + (f.size or 0) for f in typ.fields]
            return max(ends) * 8

        return None

    def get_byte_size(self, typ, exe_scope=None):
        bits = self.get_bit_size(typ, exe_scope)
        if bits is None:
            return None
        return (bits + 7) // 8
