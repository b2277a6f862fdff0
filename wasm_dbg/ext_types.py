# (c) Copyright 2023 Aaron Kimball
#
# Extended type info for sum types (Rust enums / tagged unions): the records that describe
# variant structure and template parameters, and the extractors that build them from DIEs.
#
# Extractors never raise for malformed debug info. They report a warning naming the DIE
# and return None, and the caller drops that one entry.

import wasm_dbg.dwarf_walk as dwarf_walk
from wasm_dbg.term import MsgLevel

UINT32_MAX = 0xFFFFFFFF
UINT64_MASK = 0xFFFFFFFFFFFFFFFF

# DW_LANG_* codes.
DW_LANG_Rust = 0x1c

# Languages whose record types carry extended type info.
EXTENDED_TYPE_INFO_LANGUAGES = frozenset([DW_LANG_Rust])

_SIZED_RECORD_TAGS = frozenset([
    'DW_TAG_variant_part',
    'DW_TAG_structure_type',
    'DW_TAG_union_type',
    'DW_TAG_class_type',
])


def is_language_supported_by_extended_type_info(language):
    return language in EXTENDED_TYPE_INFO_LANGUAGES


class MemberInfo(object):
    """ One data member of a variant (or the discriminant member of a variant part). """

    def __init__(self, name, location, type):
        self.name = name            # '' when the DIE has no DW_AT_name.
        self.location = location    # Byte offset within the enclosing record.
        self.type = type            # PrgmType

    def __repr__(self):
        return f'{self.name or "<anon>"}: {self.type.name} @ {self.location:#x}'


class VariantInfo(object):
    """ One arm of a variant part; selected when the discriminant equals discr_value. """

    def __init__(self, discr_value, members):
        self.discr_value = discr_value  # None marks the default arm.
        self.members = members          # List of MemberInfo; never empty.

    def is_default(self):
        return self.discr_value is None

    def __repr__(self):
        discr = 'default' if self.discr_value is None else f'{self.discr_value}'
        return f'variant [{discr}] {self.members}'


class VariantPartInfo(object):
    """ A discriminant member plus the variants it selects among. """

    def __init__(self, discr_member, variants):
        self.discr_member = discr_member  # MemberInfo
        self.variants = variants          # List of VariantInfo; never empty.

    def variant_for_discr(self, discr_value):
        """
        Return the variant selected by a discriminant value: the arm with a matching
        discr_value, else the default arm, else None.
        """
        default = None
        for variant in self.variants:
            if variant.discr_value == discr_value:
                return variant
            elif variant.is_default() and default is None:
                default = variant
        return default

    def __repr__(self):
        s = f'variant_part (discr {self.discr_member}) {{\n'
        for variant in self.variants:
            s += f'  {variant}\n'
        s += '}'
        return s


class TemplateParameterInfo(object):
    """ A generic type argument of a record, e.g. the T of Option<T>. """

    def __init__(self, type, name=None):
        self.type = type
        self.name = name

    def __repr__(self):
        return f'{self.name or "<anon>"} = {self.type.name}'


class ExtendedTypeInfo(object):
    """
    Extended info recorded for one record type of a supported language.
    """

    def __init__(self):
        self.language = None
        self.variant_parts = []
        self.template_parameters = []
        self.byte_size = None

    def has_variant_parts(self):
        return len(self.variant_parts) > 0

    def __repr__(self):
        parts = '\n'.join(map(repr, self.variant_parts))
        return f'<ExtendedTypeInfo lang={self.language} byte_size={self.byte_size} ' + \
            f'template_params={self.template_parameters}>\n{parts}'


def _warn(parser, fn_name, problem, die):
    parser.msg_q(MsgLevel.WARN,
                 f'{fn_name}: {problem} for {dwarf_walk.format_die_offset(die)}, ignoring entry.')


def extract_type(die, parser, fn_name):
    """
    Resolve the DW_AT_type of `die` through `parser`, or return None after a warning.
    """
    type_die = dwarf_walk.die_ref(die, 'DW_AT_type')
    if type_die is None:
        _warn(parser, fn_name, 'DW_AT_type is missing or not a valid reference', die)
        return None

    typ = parser.resolve_type(type_die)
    if typ is None:
        _warn(parser, fn_name, 'DW_AT_type could not be resolved to a type', die)
        return None

    return typ


def extract_member_info(die, parser):
    """
    Build a MemberInfo from a DW_TAG_member DIE.

    @param parser supplies resolve_type(die), member_offset(die) and msg_q().
    @return the MemberInfo, or None if the location is missing or out of range or the
        type cannot be resolved.
    """
    fn_name = 'extract_member_info'
    location = parser.member_offset(die)
    if location is None:
        _warn(parser, fn_name, 'DW_AT_data_member_location is missing or not a constant', die)
        return None
    if location > UINT32_MAX:
        _warn(parser, fn_name, f'DW_AT_data_member_location {location:#x} is out of range', die)
        return None

    typ = extract_type(die, parser, fn_name)
    if typ is None:
        return None

    return MemberInfo(dwarf_walk.die_name(die) or '', location, typ)


def extract_variant_info(die, parser):
    """
    Build a VariantInfo from a DW_TAG_variant DIE. Invalid members are skipped;
    a variant with no valid members is discarded.
    """
    discr_value = dwarf_walk.die_attr(die, 'DW_AT_discr_value')
    if isinstance(discr_value, bool) or not isinstance(discr_value, int):
        discr_value = None
    elif discr_value < 0:
        # Signed forms (DW_FORM_sdata) hold the same bits as the unsigned discriminant.
        discr_value &= UINT64_MASK

    members = []
    for member_die in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_member'):
        member = extract_member_info(member_die, parser)
        if member is not None:
            members.append(member)

    if not members:
        _warn(parser, 'extract_variant_info', 'no valid members', die)
        return None

    return VariantInfo(discr_value, members)


def extract_variant_part_info(die, parser):
    """
    Build a VariantPartInfo from a DW_TAG_variant_part DIE. DW_AT_discr must reference a
    valid member DIE; invalid variants are skipped and a part with no valid variants is
    discarded.
    """
    fn_name = 'extract_variant_part_info'
    discr_die = dwarf_walk.die_ref(die, 'DW_AT_discr')
    if discr_die is None:
        _warn(parser, fn_name, 'DW_AT_discr is missing or not a valid reference', die)
        return None

    discr_member = extract_member_info(discr_die, parser)
    if discr_member is None:
        _warn(parser, fn_name, 'discriminant member is not valid', die)
        return None

    variants = []
    for variant_die in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_variant'):
        variant = extract_variant_info(variant_die, parser)
        if variant is not None:
            variants.append(variant)

    if not variants:
        _warn(parser, fn_name, 'no valid variants', die)
        return None

    return VariantPartInfo(discr_member, variants)


def extract_template_parameter_info(die, parser):
    """
    Build a TemplateParameterInfo from a DW_TAG_template_type_parameter DIE.
    """
    typ = extract_type(die, parser, 'extract_template_parameter_info')
    if typ is None:
        return None

    return TemplateParameterInfo(typ, dwarf_walk.die_name(die))


def record_byte_size(die):
    """
    Return the byte size declared by a struct, union, class or variant part DIE:
    DW_AT_byte_size if present, else DW_AT_bit_size rounded up to whole bytes.
    Returns None for other tags, when neither attribute is present, or above UINT32_MAX.
    """
    if die.tag not in _SIZED_RECORD_TAGS:
        return None

    byte_size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_byte_size')
    if byte_size is None:
        bit_size = dwarf_walk.die_attr_unsigned(die, 'DW_AT_bit_size')
        if bit_size is None:
            return None
        byte_size = (bit_size + 7) // 8

    if byte_size > UINT32_MAX:
        return None
    return byte_size
