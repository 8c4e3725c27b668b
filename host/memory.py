import bisect
import copy
import itertools
import logging
import struct
import typing
from collections import defaultdict

from host.basic import Host, Relocation, Symbol, SymbolType, DataVariable, FunctionHandle
from host.types import Type, FunctionType, VoidType
from utils.base_tool import safe_str

logger = logging.getLogger(__file__)


class Segment(object):
    def __init__(self, start: int, data, readable=True, writable=False, executable=False):
        self.start = start
        self.data = bytearray(data)
        self.readable = readable
        self.writable = writable
        self.executable = executable

    @property
    def end(self) -> int:
        return self.start + len(self.data)

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end

    def __repr__(self):
        return '<Segment %#x-%#x %s%s%s>' % (
            self.start, self.end,
            'r' if self.readable else '-',
            'w' if self.writable else '-',
            'x' if self.executable else '-')


class Section(object):
    def __init__(self, name: str, start: int, end: int):
        self.name = name
        self.start = start
        self.end = end

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end

    def __repr__(self):
        return '<Section %s %#x-%#x>' % (self.name, self.start, self.end)


class MemoryHost(Host):
    """A binary held entirely in memory, together with its own type, symbol
    and function database.

    Data references are every pointer sized, pointer aligned word of a non
    executable segment whose value is a mapped address.
    """

    def __init__(self, endianness: str = 'little', address_size: int = 8,
                 calling_convention: str = 'sysv'):
        assert endianness in ('little', 'big')
        assert address_size in (4, 8)
        self.__endianness = endianness
        self.__address_size = address_size
        self.__calling_convention = calling_convention

        self.segments: typing.List[Segment] = []
        self.sections: typing.List[Section] = []
        self.__relocations: typing.Dict[int, typing.List[Relocation]] = defaultdict(list)
        self.__ref_index: typing.Optional[typing.Dict[int, typing.List[int]]] = None

        self.__types: typing.Dict[str, Type] = {}
        self.__data_vars: typing.Dict[int, DataVariable] = {}
        self.__data_var_starts: typing.List[int] = []
        self.__symbols: typing.Dict[int, Symbol] = {}
        self.__functions: typing.Dict[int, typing.List[FunctionHandle]] = defaultdict(list)

        self.__undo_counter = itertools.count(1)
        self.__undo_states: typing.Dict[str, tuple] = {}

    #  building

    def add_segment(self, segment: Segment) -> Segment:
        self.segments.append(segment)
        self.segments.sort(key=lambda s: s.start)
        self.__ref_index = None
        return segment

    def add_section(self, name: str, start: int, end: int) -> Section:
        section = Section(name, start, end)
        self.sections.append(section)
        return section

    def add_relocation(self, address: int, symbol_name: typing.Optional[str] = None,
                       symbol_address: int = 0, size: int = None) -> Relocation:
        symbol = None
        if symbol_name is not None:
            symbol = Symbol(SymbolType.ExternalSymbol, symbol_address, symbol_name)
        reloc = Relocation(address, symbol, size or self.__address_size)
        self.__relocations[address].append(reloc)
        return reloc

    def add_function(self, address: int, name: str = None,
                     type: FunctionType = None) -> FunctionHandle:
        if name is None:
            name = 'sub_%x' % address
        if type is None:
            type = FunctionType(VoidType(), [], self.__calling_convention)
        function = FunctionHandle(address, Symbol(SymbolType.FunctionSymbol, address, name), type)
        self.__functions[address].append(function)
        if address not in self.__symbols:
            self.__symbols[address] = function.symbol
        return function

    def write(self, address: int, data: bytes):
        segment = self.__segment_at(address)
        assert segment is not None, 'address %#x is not mapped' % address
        offset = address - segment.start
        assert offset + len(data) <= len(segment.data)
        segment.data[offset:offset + len(data)] = data
        self.__ref_index = None

    def write_pointer(self, address: int, value: int):
        self.write(address, value.to_bytes(self.__address_size, self.__endianness))

    #  memory

    @property
    def endianness(self) -> str:
        return self.__endianness

    @property
    def address_size(self) -> int:
        return self.__address_size

    def __segment_at(self, address: int) -> typing.Optional[Segment]:
        for segment in self.segments:
            if segment.contains(address):
                return segment
        return None

    def read(self, address: int, length: int) -> bytes:
        segment = self.__segment_at(address)
        if segment is None or not segment.readable:
            return b''
        offset = address - segment.start
        return bytes(segment.data[offset:offset + length])

    def is_valid_offset(self, address: int) -> bool:
        return self.__segment_at(address) is not None

    def is_offset_readable(self, address: int) -> bool:
        segment = self.__segment_at(address)
        return segment is not None and segment.readable

    def is_offset_executable(self, address: int) -> bool:
        segment = self.__segment_at(address)
        return segment is not None and segment.executable

    def get_sections_at(self, address: int) -> typing.List[str]:
        return [section.name for section in self.sections if section.contains(address)]

    def get_string_length(self, address: int) -> typing.Optional[int]:
        _, length = safe_str(self, address)
        if length < 0:
            return None
        return length

    #  relocations and references

    @property
    def relocation_ranges(self) -> typing.List[typing.Tuple[int, int]]:
        retv = []
        for address in sorted(self.__relocations):
            size = max(r.size for r in self.__relocations[address])
            retv.append((address, address + size))
        return retv

    def get_relocations_at(self, address: int) -> typing.List[Relocation]:
        return list(self.__relocations.get(address, []))

    def __build_ref_index(self) -> typing.Dict[int, typing.List[int]]:
        index = defaultdict(list)
        size = self.__address_size
        fmt = ('<' if self.__endianness == 'little' else '>') + ('Q' if size == 8 else 'I')
        for segment in self.segments:
            if segment.executable or not segment.readable:
                continue
            first = (segment.start + size - 1) // size * size
            skip = first - segment.start
            usable = (len(segment.data) - skip) // size * size
            if usable <= 0:
                continue
            view = memoryview(segment.data)[skip:skip + usable]
            for i, (value,) in enumerate(struct.iter_unpack(fmt, view)):
                if value == 0 or not self.is_valid_offset(value):
                    continue
                index[value].append(first + i * size)
        return index

    def get_data_refs(self, address: int) -> typing.List[int]:
        if self.__ref_index is None:
            self.__ref_index = self.__build_ref_index()
        return list(self.__ref_index.get(address, []))

    #  types, data variables and symbols

    def get_type_by_name(self, name: str) -> typing.Optional[Type]:
        return self.__types.get(name)

    def define_user_type(self, name: str, type: Type):
        self.__types[name] = type.with_name(name)

    @property
    def types(self) -> typing.Dict[str, Type]:
        return dict(self.__types)

    def get_data_var_at(self, address: int) -> typing.Optional[DataVariable]:
        index = bisect.bisect_right(self.__data_var_starts, address)
        if index == 0:
            return None
        var = self.__data_vars[self.__data_var_starts[index - 1]]
        if var.address == address or address < var.address + max(var.type.width, 1):
            return var
        return None

    def define_user_data_var(self, address: int, type: Type, confidence: int = 255):
        end = address + max(type.width, 1)
        for start in list(self.__data_var_starts):
            var = self.__data_vars[start]
            if start < end and address < start + max(var.type.width, 1):
                self.__remove_data_var(start)
        self.__data_vars[address] = DataVariable(address, type)
        bisect.insort(self.__data_var_starts, address)

    def __remove_data_var(self, address: int):
        del self.__data_vars[address]
        self.__data_var_starts.remove(address)

    @property
    def data_vars(self) -> typing.Dict[int, DataVariable]:
        return dict(self.__data_vars)

    def get_symbol_at(self, address: int) -> typing.Optional[Symbol]:
        return self.__symbols.get(address)

    def define_user_symbol(self, symbol: Symbol):
        self.__symbols[symbol.address] = symbol

    #  functions

    @property
    def default_calling_convention(self) -> typing.Optional[str]:
        return self.__calling_convention

    def get_functions_at(self, address: int) -> typing.List[FunctionHandle]:
        return list(self.__functions.get(address, []))

    def create_user_function(self, address: int) -> FunctionHandle:
        return self.add_function(address)

    def set_function_type(self, function: FunctionHandle, type: FunctionType):
        function.type = type

    #  undo

    def __snapshot(self) -> tuple:
        return copy.deepcopy((
            self.__types,
            self.__data_vars,
            self.__data_var_starts,
            self.__symbols,
            dict(self.__functions)))

    def begin_undo_actions(self) -> str:
        state = 'undo-%d' % next(self.__undo_counter)
        self.__undo_states[state] = self.__snapshot()
        return state

    def commit_undo_actions(self, state: str):
        del self.__undo_states[state]

    def revert_undo_actions(self, state: str):
        types, data_vars, starts, symbols, functions = self.__undo_states.pop(state)
        self.__types = types
        self.__data_vars = data_vars
        self.__data_var_starts = starts
        self.__symbols = symbols
        self.__functions = defaultdict(list, functions)
