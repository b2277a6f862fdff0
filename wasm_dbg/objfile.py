# (c) Copyright 2023 Aaron Kimball
#
# Read a wasm module's sections and present its .debug_* custom sections to pyelftools.

import io

from elftools.common.exceptions import ELFParseError
from elftools.common.utils import struct_parse
from elftools.dwarf.dwarfinfo import DebugSectionDescriptor, DWARFInfo, DwarfConfig
from elftools.dwarf.structs import DWARFStructs

WASM_MAGIC = b'\x00asm'
WASM_VERSION = 1

SECTION_CUSTOM = 0
SECTION_CODE = 10

_WASM_STRUCTS = DWARFStructs(little_endian=True, dwarf_format=32, address_size=4)


class WasmFormatError(Exception):
    """ The file is not a well-formed wasm module. """
    pass


class WasmSection(object):
    def __init__(self, section_id, name, offset, data):
        self.id = section_id
        self.name = name        # Custom sections only; None otherwise.
        self.offset = offset    # File offset of the section payload.
        self.data = data

    @property
    def size(self):
        return len(self.data)

    def __repr__(self):
        name = f' {self.name}' if self.name is not None else ''
        return f'<section {self.id}{name} @ {self.offset:#x} len={self.size}>'


class WasmObjectFile(object):
    """
    A wasm module image. Sections are read eagerly; DWARF info is built on request.

    @param filename the module to read, unless `data` already holds its bytes.
    """

    def __init__(self, filename=None, data=None):
        self.filename = filename
        if data is None:
            with open(filename, 'rb') as f:
                data = f.read()
        self._data = bytes(data)
        self.sections = []
        self.custom_sections = {}       # name -> WasmSection
        self.code_section_offset = None # DWARF code addresses are relative to this.
        self._read_sections()

    @staticmethod
    def is_wasm(data):
        return bytes(data[0:4]) == WASM_MAGIC

    def _parse(self, stream, field, what):
        try:
            return struct_parse(field(''), stream)
        except ELFParseError as e:
            raise WasmFormatError(f'Truncated {what} at offset {stream.tell()}') from e

    def _read_sections(self):
        if not WasmObjectFile.is_wasm(self._data):
            raise WasmFormatError('Missing wasm magic number')

        stream = io.BytesIO(self._data)
        stream.seek(len(WASM_MAGIC))
        version = self._parse(stream, _WASM_STRUCTS.Dwarf_uint32, 'version')
        if version != WASM_VERSION:
            raise WasmFormatError(f'Unsupported wasm version {version}')

        end = len(self._data)
        while stream.tell() < end:
            section_id = self._parse(stream, _WASM_STRUCTS.Dwarf_uint8, 'section id')
            size = self._parse(stream, _WASM_STRUCTS.Dwarf_uleb128, 'section size')
            payload_start = stream.tell()
            payload_end = payload_start + size
            if payload_end > end:
                raise WasmFormatError(f'Section {section_id} at {payload_start:#x} runs past EOF')

            name = None
            offset = payload_start
            if section_id == SECTION_CUSTOM:
                name_len = self._parse(stream, _WASM_STRUCTS.Dwarf_uleb128, 'custom section name')
                offset = stream.tell() + name_len
                if offset > payload_end:
                    raise WasmFormatError(f'Custom section name at {payload_start:#x} is too long')
                name = self._data[stream.tell():offset].decode('utf-8')
            elif section_id == SECTION_CODE:
                self.code_section_offset = payload_start

            section = WasmSection(section_id, name, offset, self._data[offset:payload_end])
            self.sections.append(section)
            if name is not None and name not in self.custom_sections:
                self.custom_sections[name] = section

            stream.seek(payload_end)

    def get_section(self, name):
        return self.custom_sections.get(name)

    def has_dwarf_info(self):
        return '.debug_info' in self.custom_sections

    def _section_descriptor(self, name):
        section = self.custom_sections.get(name)
        if section is None:
            return None

        return DebugSectionDescriptor(
            stream=io.BytesIO(section.data),
            name=name,
            global_offset=section.offset,
            size=section.size,
            address=0)

    def get_dwarf_info(self):
        """
        Return a pyelftools DWARFInfo over this module's .debug_* sections, or None if the
        module has no debug info.
        """
        if not self.has_dwarf_info():
            return None

        config = DwarfConfig(little_endian=True, machine_arch='wasm32', default_address_size=4)
        sec = self._section_descriptor

        return DWARFInfo(
            config=config,
            debug_info_sec=sec('.debug_info'),
            debug_aranges_sec=sec('.debug_aranges'),
            debug_abbrev_sec=sec('.debug_abbrev'),
            debug_frame_sec=sec('.debug_frame'),
            eh_frame_sec=sec('.eh_frame'),
            debug_str_sec=sec('.debug_str'),
            debug_loc_sec=sec('.debug_loc'),
            debug_ranges_sec=sec('.debug_ranges'),
            debug_line_sec=sec('.debug_line'),
            debug_pubtypes_sec=sec('.debug_pubtypes'),
            debug_pubnames_sec=sec('.debug_pubnames'),
            debug_addr_sec=sec('.debug_addr'),
            debug_str_offsets_sec=sec('.debug_str_offsets'),
            debug_line_str_sec=sec('.debug_line_str'),
            debug_loclists_sec=sec('.debug_loclists'),
            debug_rnglists_sec=sec('.debug_rnglists'),
            debug_sup_sec=sec('.debug_sup'),
            gnu_debugaltlink_sec=sec('.gnu_debugaltlink'),
            debug_types_sec=sec('.debug_types'))
