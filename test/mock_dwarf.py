# (c) Copyright 2023 Aaron Kimball
#
# In-memory stand-ins for pyelftools CompileUnit / DIE objects, for building debug info
# trees in tests without a compiled module.

import collections

from elftools.common.exceptions import DWARFError

AttributeValue = collections.namedtuple('AttributeValue', 'name form value raw_value offset')

DW_LANG_C99 = 0x0c
DW_LANG_Rust = 0x1c

DW_ATE_float = 0x04
DW_ATE_signed = 0x05
DW_ATE_unsigned = 0x07


class RawRef(object):
    """ A reference attribute value that points at an arbitrary (possibly dangling) offset. """
    def __init__(self, offset):
        self.offset = offset


class MockDIE(object):
    def __init__(self, cu, tag, attributes, parent=None):
        self.cu = cu
        self.tag = tag
        self.attributes = attributes
        self._parent = parent
        self._children = []
        self.offset = cu._allocate(self)

    @property
    def has_children(self):
        return len(self._children) > 0

    def iter_children(self):
        for child in self._children:
            yield child

    def get_parent(self):
        return self._parent

    def get_DIE_from_attribute(self, name):
        attr = self.attributes[name]
        if not attr.form.startswith('DW_FORM_ref'):
            raise DWARFError(f'Unsupported reference type {attr.form}')
        return self.cu.get_DIE_from_refaddr(attr.value)

    def __repr__(self):
        return f'<MockDIE {self.tag} @ {self.offset:#x}>'


class MockCU(object):
    """
    Holds a DIE tree rooted at a DW_TAG_compile_unit.

        cu = MockCU(DW_LANG_Rust)
        u32 = cu.die('DW_TAG_base_type', name='u32', byte_size=4, encoding=DW_ATE_unsigned)
        s = cu.die('DW_TAG_structure_type', name='S', byte_size=4)
        cu.die('DW_TAG_member', parent=s, name='x', type=u32, data_member_location=0)

    Keyword attributes become DW_AT_<name>. A MockDIE or RawRef value becomes a reference;
    str becomes a string; list is an expression block; bool is a flag; int is a constant.
    """

    def __init__(self, language=DW_LANG_Rust, cu_offset=0):
        self.cu_offset = cu_offset
        self._dies = {}
        self._next_offset = cu_offset + 0xb
        attrs = {}
        if language is not None:
            attrs['DW_AT_language'] = _make_attr('DW_AT_language', language)
        self._top = MockDIE(self, 'DW_TAG_compile_unit', attrs)

    def _allocate(self, die):
        offset = self._next_offset
        self._next_offset += 0x10
        self._dies[offset] = die
        return offset

    def get_top_DIE(self):
        return self._top

    def get_DIE_from_refaddr(self, offset):
        try:
            return self._dies[offset]
        except KeyError:
            raise DWARFError(f'No DIE at offset {offset:#x}') from None

    def iter_DIEs(self):
        return iter(list(self._dies.values()))

    def die(self, tag, parent=None, **attrs):
        if parent is None:
            parent = self._top
        attributes = {}
        for (k, v) in attrs.items():
            name = 'DW_AT_' + k
            attributes[name] = _make_attr(name, v)
        die = MockDIE(self, tag, attributes, parent)
        parent._children.append(die)
        return die


def _make_attr(name, value):
    if isinstance(value, MockDIE):
        return AttributeValue(name, 'DW_FORM_ref4', value.offset, value.offset, 0)
    elif isinstance(value, RawRef):
        return AttributeValue(name, 'DW_FORM_ref4', value.offset, value.offset, 0)
    elif isinstance(value, str):
        return AttributeValue(name, 'DW_FORM_string', value.encode('utf-8'), value, 0)
    elif isinstance(value, list):
        return AttributeValue(name, 'DW_FORM_exprloc', value, value, 0)
    elif isinstance(value, bool):
        return AttributeValue(name, 'DW_FORM_flag_present', value, value, 0)
    elif isinstance(value, int) and value < 0:
        return AttributeValue(name, 'DW_FORM_sdata', value, value, 0)
    else:
        return AttributeValue(name, 'DW_FORM_udata', value, value, 0)


class MockDwarfInfo(object):
    """ Stands in for a pyelftools DWARFInfo over a set of MockCUs. """
    def __init__(self, *cus):
        self._cus = list(cus)

    def iter_CUs(self):
        return iter(self._cus)


class MockObjfile(object):
    """ Stands in for a WasmObjectFile whose DWARF info is a MockDwarfInfo. """
    def __init__(self, dwarf_info):
        self._dwarf_info = dwarf_info

    def has_dwarf_info(self):
        return self._dwarf_info is not None

    def get_dwarf_info(self):
        return self._dwarf_info


def make_option_u32(cu):
    """
    Build the debug info rustc emits for core::option::Option<u32> in `cu`.

    Returns a dict of the interesting DIEs by role.
    """
    u32 = cu.die('DW_TAG_base_type', name='u32', byte_size=4, encoding=DW_ATE_unsigned)
    core = cu.die('DW_TAG_namespace', name='core')
    option_ns = cu.die('DW_TAG_namespace', parent=core, name='option')

    option = cu.die('DW_TAG_structure_type', parent=option_ns, name='Option<u32>', byte_size=8,
                    alignment=4)
    cu.die('DW_TAG_template_type_parameter', parent=option, type=u32, name='T')

    none_arm = cu.die('DW_TAG_structure_type', parent=option, name='None', byte_size=8)
    some_arm = cu.die('DW_TAG_structure_type', parent=option, name='Some', byte_size=8)
    cu.die('DW_TAG_member', parent=some_arm, name='__0', type=u32, data_member_location=4)

    variant_part = cu.die('DW_TAG_variant_part', parent=option)
    discr = cu.die('DW_TAG_member', parent=variant_part, type=u32, data_member_location=0,
                   artificial=True)
    variant_part.attributes['DW_AT_discr'] = _make_attr('DW_AT_discr', discr)

    none_variant = cu.die('DW_TAG_variant', parent=variant_part, discr_value=0)
    cu.die('DW_TAG_member', parent=none_variant, name='None', type=none_arm,
           data_member_location=0)
    some_variant = cu.die('DW_TAG_variant', parent=variant_part, discr_value=1)
    cu.die('DW_TAG_member', parent=some_variant, name='Some', type=some_arm,
           data_member_location=0)

    return {
        'u32': u32,
        'option': option,
        'none_arm': none_arm,
        'some_arm': some_arm,
        'variant_part': variant_part,
        'discr': discr,
        'none_variant': none_variant,
        'some_variant': some_variant,
    }
