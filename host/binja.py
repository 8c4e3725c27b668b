import logging
import typing

import binaryninja
from binaryninja import BinaryView, Endianness, TypeClass as BNTypeClass, SymbolType as BNSymbolType
from binaryninja import types as bntypes

from host.basic import Host, Relocation, Symbol, SymbolType, DataVariable, FunctionHandle
from host import types

logger = logging.getLogger(__file__)


def to_binja_type(view: BinaryView, t: types.Type) -> bntypes.Type:
    """descriptor -> binaryninja type. Registered structures are referenced
    by name instead of being inlined."""
    arch = view.arch
    tc = t.type_class
    if tc == types.TypeClass.VoidTypeClass:
        return bntypes.Type.void()
    elif tc == types.TypeClass.BoolTypeClass:
        return bntypes.Type.bool()
    elif tc == types.TypeClass.IntegerTypeClass:
        return bntypes.Type.int(t.width, t.signed, t.alt_name or '')
    elif tc == types.TypeClass.FloatTypeClass:
        return bntypes.Type.float(t.width)
    elif tc == types.TypeClass.PointerTypeClass:
        return bntypes.Type.pointer(arch, to_binja_type(view, t.target))
    elif tc == types.TypeClass.ArrayTypeClass:
        return bntypes.Type.array(to_binja_type(view, t.element_type), t.count)
    elif tc == types.TypeClass.NamedTypeReferenceClass:
        return bntypes.Type.named_type_from_registered_type(view, t.name)
    elif tc == types.TypeClass.FunctionTypeClass:
        params = [bntypes.FunctionParameter(to_binja_type(view, p.type), p.name) for p in t.parameters]
        cc = None
        if view.platform is not None:
            for candidate in view.platform.calling_conventions:
                if candidate.name == t.calling_convention:
                    cc = candidate
                    break
            else:
                cc = view.platform.default_calling_convention
        return bntypes.Type.function(to_binja_type(view, t.return_value), params, cc)
    elif tc == types.TypeClass.StructureTypeClass:
        if t.registered_name is not None and view.get_type_by_name(t.registered_name) is not None:
            return bntypes.Type.named_type_from_registered_type(view, t.registered_name)
        builder = bntypes.StructureBuilder.create()
        builder.propagate_data_var_refs = t.propagate_data_var_refs
        if t.base_structures:
            builder.base_structures = [
                bntypes.BaseStructure(to_binja_type(view, base.type), base.offset, base.type.width)
                for base in t.base_structures]
        for member in t.members:
            builder.insert(member.offset, to_binja_type(view, member.type), member.name)
        builder.width = t.width
        return bntypes.Type.structure_type(builder)
    raise ValueError('cannot translate %s' % tc.name)


def from_binja_type(view: BinaryView, t: bntypes.Type) -> types.Type:
    """binaryninja type -> descriptor, named references are resolved"""
    registered = t.registered_name
    tc = t.type_class

    if tc == BNTypeClass.NamedTypeReferenceClass:
        target = t.target(view)
        if target is None:
            return types.NamedTypeReferenceType(str(t.name), t.width)
        return from_binja_type(view, target).with_name(str(t.name))

    if tc == BNTypeClass.VoidTypeClass:
        retv = types.VoidType()
    elif tc == BNTypeClass.BoolTypeClass:
        retv = types.BoolType(t.width)
    elif tc == BNTypeClass.IntegerTypeClass:
        retv = types.IntegerType(t.width, bool(t.signed), t.altname or None)
    elif tc == BNTypeClass.FloatTypeClass:
        retv = types.FloatType(t.width)
    elif tc == BNTypeClass.PointerTypeClass:
        retv = types.PointerType(from_binja_type(view, t.target), t.width)
    elif tc == BNTypeClass.ArrayTypeClass:
        retv = types.ArrayType(from_binja_type(view, t.element_type), t.count)
    elif tc == BNTypeClass.FunctionTypeClass:
        cc = t.calling_convention
        retv = types.FunctionType(
            from_binja_type(view, t.return_value),
            [types.FunctionParameter(from_binja_type(view, p.type), p.name) for p in t.parameters],
            cc.name if cc is not None else None)
    elif tc == BNTypeClass.StructureTypeClass:
        bases = []
        for base in t.base_structures:
            base_type = from_binja_type(view, base.type)
            if isinstance(base_type, types.StructureType):
                bases.append(types.BaseStructure(base_type, base.offset))
        members = [types.StructureMember(from_binja_type(view, m.type), m.name, m.offset)
                   for m in t.members]
        retv = types.StructureType(members, t.width, t.alignment, bases,
                                   bool(getattr(t, 'propagate_data_var_refs', False)))
    else:
        # enums, wide chars... are only carried around, never decoded
        retv = types.NamedTypeReferenceType(str(t), t.width)
        retv.type_class = types.TypeClass[tc.name]

    if registered is not None:
        retv = retv.with_name(str(registered.name))
    return retv


class BinaryNinjaHost(Host):
    def __init__(self, view: BinaryView):
        assert isinstance(view, BinaryView)
        self.__view = view

    @property
    def view(self) -> BinaryView:
        return self.__view

    #  memory

    @property
    def endianness(self) -> str:
        return 'big' if self.__view.endianness == Endianness.BigEndian else 'little'

    @property
    def address_size(self) -> int:
        return self.__view.address_size

    def read(self, address: int, length: int) -> bytes:
        return self.__view.read(address, length)

    def is_valid_offset(self, address: int) -> bool:
        return self.__view.is_valid_offset(address)

    def is_offset_readable(self, address: int) -> bool:
        return self.__view.is_offset_readable(address)

    def is_offset_executable(self, address: int) -> bool:
        return self.__view.is_offset_executable(address)

    def get_sections_at(self, address: int) -> typing.List[str]:
        return [section.name for section in self.__view.get_sections_at(address)]

    def get_string_length(self, address: int) -> typing.Optional[int]:
        string = self.__view.get_string_at(address)
        if string is None:
            return None
        return string.length

    #  relocations and references

    @property
    def relocation_ranges(self) -> typing.List[typing.Tuple[int, int]]:
        return list(self.__view.relocation_ranges)

    def get_relocations_at(self, address: int) -> typing.List[Relocation]:
        retv = []
        for reloc in self.__view.relocations_at(address):
            symbol = reloc.symbol
            if symbol is not None:
                symbol = self.__symbol(symbol)
            retv.append(Relocation(address, symbol))
        return retv

    def get_data_refs(self, address: int) -> typing.List[int]:
        return list(self.__view.get_data_refs(address))

    #  types, data variables and symbols

    def get_type_by_name(self, name: str) -> typing.Optional[types.Type]:
        t = self.__view.get_type_by_name(name)
        if t is None:
            return None
        return from_binja_type(self.__view, t).with_name(name)

    def define_user_type(self, name: str, type: types.Type):
        self.__view.define_user_type(name, to_binja_type(self.__view, type))

    def get_data_var_at(self, address: int) -> typing.Optional[DataVariable]:
        var = self.__view.get_data_var_at(address)
        if var is None:
            start = self.__view.get_previous_data_var_start_before(address)
            var = self.__view.get_data_var_at(start)
            if var is None or not start <= address < start + max(var.type.width, 1):
                return None
        return DataVariable(var.address, from_binja_type(self.__view, var.type),
                            str(var.type), var.auto_discovered)

    def define_user_data_var(self, address: int, type: types.Type, confidence: int = 255):
        t = to_binja_type(self.__view, type).with_confidence(confidence)
        self.__view.define_user_data_var(address, t)

    @staticmethod
    def __symbol(symbol: bntypes.CoreSymbol) -> Symbol:
        try:
            symbol_type = SymbolType[symbol.type.name]
        except KeyError:
            symbol_type = SymbolType.ExternalSymbol
        return Symbol(symbol_type, symbol.address, symbol.short_name, symbol.raw_name)

    def get_symbol_at(self, address: int) -> typing.Optional[Symbol]:
        symbol = self.__view.get_symbol_at(address)
        if symbol is None:
            return None
        return self.__symbol(symbol)

    def define_user_symbol(self, symbol: Symbol):
        self.__view.define_user_symbol(
            bntypes.Symbol(BNSymbolType[symbol.type.name], symbol.address, symbol.short_name))

    #  functions

    @property
    def default_calling_convention(self) -> typing.Optional[str]:
        platform = self.__view.platform
        if platform is None or platform.default_calling_convention is None:
            return None
        return platform.default_calling_convention.name

    def __function(self, function: binaryninja.Function) -> FunctionHandle:
        return FunctionHandle(function.start, self.__symbol(function.symbol),
                              from_binja_type(self.__view, function.type), function)

    def get_functions_at(self, address: int) -> typing.List[FunctionHandle]:
        return [self.__function(f) for f in self.__view.get_functions_at(address)]

    def create_user_function(self, address: int) -> FunctionHandle:
        function = self.__view.create_user_function(address, self.__view.platform)
        if function is None:
            function = self.__view.get_function_at(address)
        if function is None:
            raise RuntimeError('Unable to create a function at %#x' % address)
        return self.__function(function)

    def set_function_type(self, function: FunctionHandle, type: types.FunctionType):
        function.handle.type = to_binja_type(self.__view, type)
        function.type = type

    #  undo

    def begin_undo_actions(self) -> str:
        return self.__view.begin_undo_actions()

    def commit_undo_actions(self, state: str):
        self.__view.commit_undo_actions(state)

    def revert_undo_actions(self, state: str):
        self.__view.revert_undo_actions(state)
