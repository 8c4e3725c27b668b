import os
import platform
import shutil
import subprocess
import tempfile
import typing

import pytest

from analysis.rtti.gnu import TYPE_INFO_CLASSES, TypeInfoKind
from host.elf import ElfHost
from host.memory import MemoryHost, Segment
from host.types import FunctionType

SYMBOL_OF_KIND = {kind: symbol for symbol, kind in TYPE_INFO_CLASSES.items()}


class SyntheticBinary(object):
    """Hand assembled image: code in .text, type names in .rodata, type_info
    records and vtables in .data.rel.ro.

    Every helper appends at the end of its section and returns the address
    of what it wrote.
    """

    TEXT = 0x1000
    RODATA = 0x4000
    DATA = 0x8000
    SIZE = 0x2000

    def __init__(self, endianness: str = 'little', address_size: int = 8):
        self.host = MemoryHost(endianness, address_size)
        self.ptr_size = address_size

        self.host.add_segment(Segment(self.TEXT, b'\xcc' * self.SIZE, executable=True))
        self.host.add_segment(Segment(self.RODATA, bytes(self.SIZE)))
        self.host.add_segment(Segment(self.DATA, bytes(self.SIZE), writable=True))
        self.host.add_section('.text', self.TEXT, self.TEXT + self.SIZE)
        self.host.add_section('.rodata', self.RODATA, self.RODATA + self.SIZE)
        self.host.add_section('.data.rel.ro', self.DATA, self.DATA + self.SIZE)

        self.__text = self.TEXT
        self.__rodata = self.RODATA
        self.__data = self.DATA

    #  raw helpers

    def function(self, name: str = None, type: FunctionType = None, define: bool = True) -> int:
        address = self.__text
        self.__text += 0x10
        if define:
            self.host.add_function(address, name, type)
        return address

    def string(self, value: str) -> int:
        address = self.__rodata
        data = value.encode() + b'\x00'
        self.host.write(address, data)
        self.__rodata += len(data)
        return address

    def words(self, values: typing.Sequence[int], align: int = None) -> int:
        align = align or self.ptr_size
        self.__data = (self.__data + align - 1) // align * align
        address = self.__data
        for value in values:
            self.host.write_pointer(self.__data, value)
            self.__data += self.ptr_size
        return address

    def raw(self, data: bytes) -> int:
        address = self.__data
        self.host.write(address, data)
        self.__data += len(data)
        return address

    def pad(self, count: int = 1):
        """zero words, so that whatever follows is not mistaken for a slot"""
        self.words([0] * count)

    #  type_info records

    def type_info(self, kind: TypeInfoKind, name: str, extra: bytes = b'') -> int:
        name_ptr = self.string('%d%s' % (len(name), name))
        address = self.words([0, name_ptr])
        if extra:
            self.raw(extra)
        self.host.add_relocation(address, SYMBOL_OF_KIND[kind])
        return address

    def class_type(self, name: str) -> int:
        return self.type_info(TypeInfoKind.CLASS, name)

    def si_class_type(self, name: str, base: int) -> int:
        return self.type_info(TypeInfoKind.SI_CLASS, name, self.__pointer(base))

    def vmi_class_type(self, name: str, bases: typing.Sequence[typing.Tuple[int, int]],
                       flags: int = 0, base_count: int = None) -> int:
        if base_count is None:
            base_count = len(bases)
        endianness = self.host.endianness
        extra = flags.to_bytes(4, endianness) + base_count.to_bytes(4, endianness)
        for base, offset_flags in bases:
            extra += self.__pointer(base) + offset_flags.to_bytes(self.ptr_size, endianness)
        return self.type_info(TypeInfoKind.VMI_CLASS, name, extra)

    def __pointer(self, value: int) -> bytes:
        return value.to_bytes(self.ptr_size, self.host.endianness)

    #  vtables

    def vtable(self, rtti: int, methods: typing.Sequence[int], offset_to_top: int = 0) -> int:
        """returns the address of the first method slot"""
        address = self.words([offset_to_top, rtti] + list(methods))
        self.pad()
        return address + 2 * self.ptr_size


def compiler() -> typing.Optional[str]:
    if platform.system() != 'Linux' or platform.machine() not in ('x86_64', 'aarch64'):
        return None
    return shutil.which('g++')


requires_compiler = pytest.mark.skipif(compiler() is None, reason='needs g++ on x86_64/aarch64 linux')

_build_dir = None


def load_test_module(path: str):
    """
    compile tests/blob/<path> as a PIE and load it with the ELF host
    """
    global _build_dir
    root_dir = os.path.abspath(os.path.dirname(__file__))
    fullpath = os.path.join(root_dir, "blob", path)
    assert os.path.isfile(fullpath)

    if _build_dir is None:
        _build_dir = tempfile.mkdtemp(prefix='rtti-check-')
    output = os.path.join(_build_dir, os.path.splitext(os.path.basename(path))[0])
    if not os.path.exists(output):
        subprocess.run(
            [compiler(), '-O0', '-fPIE', '-pie', '-o', output, fullpath],
            check=True)

    module = ElfHost(output)
    assert module is not None

    return module
