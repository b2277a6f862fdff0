# (c) Copyright 2023 Aaron Kimball
#
# Type system that records variant structure for sum types while completing record types,
# and uses the declared size of those types to answer layout queries.

import wasm_dbg.dwarf_walk as dwarf_walk
import wasm_dbg.ext_types as ext_types
import wasm_dbg.plugins as plugins
import wasm_dbg.types as types
from wasm_dbg.term import MsgLevel


class ExtendedTypeInfoStore(object):
    """
    Map from a type (by identity) to the ExtendedTypeInfo recorded for it.

    Entries are created on demand and live as long as the store. The store does not own
    the types it is keyed on.
    """

    def __init__(self):
        self._type_info = {}

    def get_or_create(self, typ):
        """
        Return the info for `typ`, creating an empty record on first use.
        """
        info = self._type_info.get(typ)
        if info is None:
            info = ext_types.ExtendedTypeInfo()
            self._type_info[typ] = info
        return info

    def get(self, typ):
        """
        Return the info for `typ`, or None. Never creates a record.
        """
        return self._type_info.get(typ)

    def __contains__(self, typ):
        return typ in self._type_info

    def __len__(self):
        return len(self._type_info)


def link_variant_part_member_types(die, link_fn, parser):
    """
    For every variant_part -> variant -> member beneath `die`, call link_fn(type_die) with
    the DIE named by the member's DW_AT_type. Members without a usable type are reported
    and skipped.
    """
    for variant_part in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_variant_part'):
        for variant in dwarf_walk.iter_children_by_tag(variant_part, 'DW_TAG_variant'):
            for member in dwarf_walk.iter_children_by_tag(variant, 'DW_TAG_member'):
                type_die = dwarf_walk.die_ref(member, 'DW_AT_type')
                if type_die is None:
                    parser.msg_q(MsgLevel.WARN, 'link_variant_part_member_types: ',
                                 'DW_AT_type is missing or not a valid reference for ',
                                 dwarf_walk.format_die_offset(member), ', ignoring entry.')
                    continue
                link_fn(type_die)


class DWARFTypeParserExtended(types.DWARFTypeParser):
    """
    DWARF type parser that, for allow-listed languages, wraps the generic record completion:
    variant arm types are linked into the record's scope beforehand, and the variant parts,
    template parameters and declared size are recorded as ExtendedTypeInfo afterward.
    """

    def _language_for(self, die, typ):
        language = dwarf_walk.cu_language(die)
        if language is None:
            language = typ.language
        return language

    def complete_type_from_dwarf(self, die, typ):
        if typ.is_record() and typ.is_complete():
            return True

        language = self._language_for(die, typ)
        supported = ext_types.is_language_supported_by_extended_type_info(language)

        if supported and typ.is_record():
            link_variant_part_member_types(
                die, lambda type_die: self.link_decl_context_to_die(typ, type_die), self)

        if not super().complete_type_from_dwarf(die, typ):
            return False

        if not supported:
            return True

        info = self._type_system.get_extended_type_info(typ, create_if_needed=True)
        info.language = language

        for variant_part_die in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_variant_part'):
            variant_part = ext_types.extract_variant_part_info(variant_part_die, self)
            if variant_part is not None:
                info.variant_parts.append(variant_part)

        for param_die in dwarf_walk.iter_children_by_tag(die, 'DW_TAG_template_type_parameter'):
            param = ext_types.extract_template_parameter_info(param_die, self)
            if param is not None:
                info.template_parameters.append(param)

        info.byte_size = ext_types.record_byte_size(die)

        self._backend.verboseprint('Completed ', typ.name, ' with ', len(info.variant_parts),
                                   ' variant part(s)')
        return True


@plugins.plugin('type-system', 'wasm-clang-extended',
                'clang base AST context plug-in (with extended rust support)')
class ExtendedTypeSystem(types.TypeSystem):
    """
    Type system whose completion records ExtendedTypeInfo for sum types and whose
    bit-size queries prefer the size recorded there.
    """

    def __init__(self, backend, language=None):
        super().__init__(backend, language)
        self._extended_type_info = ExtendedTypeInfoStore()

    @staticmethod
    def create_instance(backend, language=None, module=None):
        """
        Plugin factory: a module-bound extended type system, or the generic type system
        when there is no module to bind to.
        """
        if module is None:
            return types.TypeSystem(backend, language)
        return ExtendedTypeSystem(backend, language)

    def _make_dwarf_parser(self):
        return DWARFTypeParserExtended(self, self._backend)

    def get_extended_type_info(self, typ, create_if_needed=False):
        if create_if_needed:
            return self._extended_type_info.get_or_create(typ)
        return self._extended_type_info.get(typ)

    @staticmethod
    def extended_type_info_for(typ, create_if_needed=False):
        """
        Return the ExtendedTypeInfo for `typ` from the extended type system that owns it.
        Returns None if `typ` belongs to some other type system.
        """
        type_system = getattr(typ, 'type_system', None)
        if not isinstance(type_system, ExtendedTypeSystem):
            return None
        return type_system.get_extended_type_info(typ, create_if_needed)

    def get_bit_size(self, typ, exe_scope=None):
        if typ is not None and typ.is_record():
            self.complete_type(typ)

        info = self.get_extended_type_info(typ)
        if info is not None and info.byte_size is not None:
            return info.byte_size * 8

        return super().get_bit_size(typ, exe_scope)
