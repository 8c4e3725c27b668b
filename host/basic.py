import abc
import enum
import typing
import contextlib
import logging

from host.types import Type, FunctionType

logger = logging.getLogger(__file__)


class SymbolType(enum.Enum):
    FunctionSymbol = 0
    ImportAddressSymbol = 1
    ImportedFunctionSymbol = 2
    DataSymbol = 3
    ImportedDataSymbol = 4
    ExternalSymbol = 5


class Symbol(object):
    def __init__(self, type: SymbolType, address: int, short_name: str, raw_name: str = None):
        self.type = type
        self.address = address
        self.short_name = short_name
        self.raw_name = raw_name if raw_name is not None else short_name

    @property
    def name(self) -> str:
        return self.short_name

    def __repr__(self):
        return '<Symbol %s %s @%#x>' % (self.type.name, self.raw_name, self.address)


class Relocation(object):
    def __init__(self, address: int, symbol: typing.Optional[Symbol] = None, size: int = 8):
        self.address = address
        self.symbol = symbol
        self.size = size

    def __repr__(self):
        return '<Relocation @%#x -> %s>' % (self.address, self.symbol)


class DataVariable(object):
    def __init__(self, address: int, type: Type, type_name: str = None, auto_discovered: bool = False):
        self.address = address
        self.type = type
        self.type_name = type_name if type_name is not None else str(type)
        self.auto_discovered = auto_discovered

    def __repr__(self):
        return '<DataVariable %s @%#x>' % (self.type_name, self.address)


class FunctionHandle(object):
    """A function known by the host.

    ``handle`` is whatever object the host uses for the function, hosts get it
    back in ``set_function_type``.
    """

    def __init__(self, start: int, symbol: Symbol, type: FunctionType, handle=None):
        self.start = start
        self.symbol = symbol
        self.type = type
        self.handle = handle

    @property
    def name(self) -> str:
        return self.symbol.short_name

    def __repr__(self):
        return '<FunctionHandle %s @%#x>' % (self.symbol.short_name, self.start)


class Host(abc.ABC):
    """Everything the RTTI recovery needs from a loaded binary.

    Memory access, relocations, cross references, a type/symbol database,
    an analysis function database and undo groups.
    """

    #  memory

    @property
    def endianness(self) -> str:
        return 'little'

    @property
    def address_size(self) -> int:
        return 8

    @abc.abstractmethod
    def read(self, address: int, length: int) -> bytes:
        """may return fewer bytes than requested"""
        pass

    @abc.abstractmethod
    def is_valid_offset(self, address: int) -> bool:
        pass

    @abc.abstractmethod
    def is_offset_readable(self, address: int) -> bool:
        pass

    @abc.abstractmethod
    def is_offset_executable(self, address: int) -> bool:
        pass

    @abc.abstractmethod
    def get_sections_at(self, address: int) -> typing.List[str]:
        pass

    @abc.abstractmethod
    def get_string_length(self, address: int) -> typing.Optional[int]:
        pass

    def read_pointer(self, address: int) -> typing.Optional[int]:
        data = self.read(address, self.address_size)
        if len(data) != self.address_size:
            return None
        return int.from_bytes(data, self.endianness)

    #  relocations and references

    @property
    @abc.abstractmethod
    def relocation_ranges(self) -> typing.List[typing.Tuple[int, int]]:
        pass

    @abc.abstractmethod
    def get_relocations_at(self, address: int) -> typing.List[Relocation]:
        pass

    @abc.abstractmethod
    def get_data_refs(self, address: int) -> typing.List[int]:
        pass

    #  types, data variables and symbols

    @abc.abstractmethod
    def get_type_by_name(self, name: str) -> typing.Optional[Type]:
        pass

    @abc.abstractmethod
    def define_user_type(self, name: str, type: Type):
        pass

    @abc.abstractmethod
    def get_data_var_at(self, address: int) -> typing.Optional[DataVariable]:
        """return the data variable containing address"""
        pass

    @abc.abstractmethod
    def define_user_data_var(self, address: int, type: Type, confidence: int = 255):
        pass

    @abc.abstractmethod
    def get_symbol_at(self, address: int) -> typing.Optional[Symbol]:
        pass

    @abc.abstractmethod
    def define_user_symbol(self, symbol: Symbol):
        pass

    #  functions

    @property
    @abc.abstractmethod
    def default_calling_convention(self) -> typing.Optional[str]:
        pass

    @abc.abstractmethod
    def get_functions_at(self, address: int) -> typing.List[FunctionHandle]:
        pass

    @abc.abstractmethod
    def create_user_function(self, address: int) -> FunctionHandle:
        """create a function at address for the default platform"""
        pass

    @abc.abstractmethod
    def set_function_type(self, function: FunctionHandle, type: FunctionType):
        pass

    #  undo

    @abc.abstractmethod
    def begin_undo_actions(self) -> str:
        pass

    @abc.abstractmethod
    def commit_undo_actions(self, state: str):
        pass

    @abc.abstractmethod
    def revert_undo_actions(self, state: str):
        pass

    @contextlib.contextmanager
    def undoable_transaction(self):
        state = self.begin_undo_actions()
        try:
            yield state
        except BaseException:
            logger.error('reverting undo actions %s' % state)
            self.revert_undo_actions(state)
            raise
        self.commit_undo_actions(state)
