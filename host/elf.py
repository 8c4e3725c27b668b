import logging
import typing

from elftools.common.exceptions import ELFError
from elftools.elf.constants import P_FLAGS, SH_FLAGS
from elftools.elf.elffile import ELFFile
from elftools.elf.relocation import RelocationSection
from elftools.elf.sections import SymbolTableSection

from host.memory import MemoryHost, Segment

logger = logging.getLogger(__file__)


# relocation types whose result is B + A and S + A, per machine
RELATIVE_RELOCATIONS = {
    'EM_X86_64': (8,),              # R_X86_64_RELATIVE
    'EM_AARCH64': (1027,),          # R_AARCH64_RELATIVE
}

ABSOLUTE_RELOCATIONS = {
    'EM_X86_64': (1, 6, 7),         # R_X86_64_64, GLOB_DAT, JUMP_SLOT
    'EM_AARCH64': (257, 1025, 1026),  # R_AARCH64_ABS64, GLOB_DAT, JUMP_SLOT
}

CALLING_CONVENTIONS = {
    'EM_X86_64': 'sysv',
    'EM_AARCH64': 'cdecl',
}


class ElfHost(MemoryHost):
    """An ELF64 image loaded at its link address.

    Dynamic relocations are applied to the image (with a load base of 0),
    functions come from the symbol tables, everything else the analysis
    defines lives in the in-memory database.
    """

    def __init__(self, path: str):
        self.path = path
        try:
            with open(path, 'rb') as fd:
                elf = ELFFile(fd)
                if elf.elfclass != 64:
                    raise ValueError('%s: only ELF64 is supported' % path)

                self.machine = elf['e_machine']
                super().__init__(
                    'little' if elf.little_endian else 'big',
                    8,
                    CALLING_CONVENTIONS.get(self.machine, 'cdecl'))

                self.__load_segments(elf)
                self.__load_sections(elf)
                self.__load_functions(elf)
                self.__load_relocations(elf)
        except ELFError as e:
            raise ValueError('%s: %s' % (path, e))

        if self.machine not in RELATIVE_RELOCATIONS:
            logger.warning('relocations are not applied for %s' % self.machine)

    def __load_segments(self, elf: ELFFile):
        for segment in elf.iter_segments():
            if segment['p_type'] != 'PT_LOAD':
                continue
            flags = segment['p_flags']
            data = segment.data()
            data += b'\x00' * (segment['p_memsz'] - len(data))
            self.add_segment(Segment(
                segment['p_vaddr'],
                data,
                readable=bool(flags & P_FLAGS.PF_R),
                writable=bool(flags & P_FLAGS.PF_W),
                executable=bool(flags & P_FLAGS.PF_X)))

        if len(self.segments) == 0:
            logger.warning('%s has no loadable segment' % self.path)

    def __load_sections(self, elf: ELFFile):
        for section in elf.iter_sections():
            if not section['sh_flags'] & SH_FLAGS.SHF_ALLOC or section['sh_addr'] == 0:
                continue
            start = section['sh_addr']
            self.add_section(section.name, start, start + section['sh_size'])

    def __load_functions(self, elf: ELFFile):
        tables = [s for s in elf.iter_sections() if isinstance(s, SymbolTableSection)]
        # the static table carries more names than the dynamic one
        tables.sort(key=lambda s: s.name != '.symtab')
        for table in tables:
            for symbol in table.iter_symbols():
                if symbol['st_info']['type'] != 'STT_FUNC':
                    continue
                if symbol['st_shndx'] == 'SHN_UNDEF' or symbol['st_value'] == 0:
                    continue
                address = symbol['st_value']
                if len(self.get_functions_at(address)) == 0:
                    self.add_function(address, symbol.name)

    def __load_relocations(self, elf: ELFFile):
        relative = RELATIVE_RELOCATIONS.get(self.machine, ())
        absolute = ABSOLUTE_RELOCATIONS.get(self.machine, ())

        for section in elf.iter_sections():
            if not isinstance(section, RelocationSection):
                continue
            if not section['sh_flags'] & SH_FLAGS.SHF_ALLOC:
                continue

            symtab = None
            if section['sh_link']:
                symtab = elf.get_section(section['sh_link'])

            for reloc in section.iter_relocations():
                address = reloc['r_offset']
                rtype = reloc['r_info_type']
                addend = reloc['r_addend'] if section.is_RELA() else None

                name, value = self.__relocation_symbol(symtab, reloc['r_info_sym'])
                self.add_relocation(address, name, value or 0)

                if addend is None or not self.is_valid_offset(address):
                    continue
                if rtype in relative:
                    self.write_pointer(address, addend & 0xffffffffffffffff)
                elif rtype in absolute and value is not None:
                    self.write_pointer(address, (value + addend) & 0xffffffffffffffff)

    @staticmethod
    def __relocation_symbol(symtab, index: int) -> typing.Tuple[typing.Optional[str], typing.Optional[int]]:
        """name and resolved value (None if imported) of a relocation symbol"""
        if index == 0 or not isinstance(symtab, SymbolTableSection):
            return None, None
        symbol = symtab.get_symbol(index)
        if not symbol.name:
            return None, None
        if symbol['st_shndx'] == 'SHN_UNDEF':
            return symbol.name, None
        return symbol.name, symbol['st_value']
