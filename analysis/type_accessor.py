import logging
import typing

from host.basic import Host
from host.types import Type, TypeClass, StructureType, IntegerType
from utils.base_tool import escape_bytes

logger = logging.getLogger(__file__)

Value = typing.Union[bool, int, typing.Dict[str, typing.Any], typing.List[typing.Any]]


class TypeDecodeError(RuntimeError):
    pass


class TypeAccessor(object):
    """Reads typed values out of a binary.

    Only the type classes that show up in ABI records are understood:
    void, bool, integers, pointers, functions, structures and arrays.
    """

    def __init__(self, host: Host):
        assert isinstance(host, Host)
        self.__host = host

    def __read_raw(self, type: Type, address: int) -> int:
        data = self.__host.read(address, type.width)
        if len(data) != type.width:
            raise TypeDecodeError(
                "Short read of %d bytes at %#x for `%s`" % (type.width, address, str(type)))
        return int.from_bytes(data, self.__host.endianness, signed=False)

    def read_value(self, type: Type, address: int) -> Value:
        type_class = type.type_class
        if type_class in (TypeClass.VoidTypeClass, TypeClass.FunctionTypeClass):
            return 0

        elif type_class == TypeClass.BoolTypeClass:
            return self.__read_raw(type, address) != 0

        elif type_class in (TypeClass.IntegerTypeClass, TypeClass.PointerTypeClass):
            data = self.__read_raw(type, address)
            width = type.width
            if width not in (1, 2, 4, 8):
                return data
            if type.signed and data & (1 << (width * 8 - 1)):
                return data - (1 << (width * 8))
            return data

        elif type_class == TypeClass.StructureTypeClass:
            retv = {}
            for member in type.members_including_inherited():
                retv[member.name] = self.read_value(member.type, address + member.offset)
            return retv

        elif type_class == TypeClass.ArrayTypeClass:
            element_type = type.element_type
            return [self.read_value(element_type, address + i * element_type.width)
                    for i in range(type.count)]

        raise TypeDecodeError("Unhandled type class %s" % type_class.name)

    decode = read_value

    def __structure_at(self, address: int) -> StructureType:
        var = self.__host.get_data_var_at(address)
        if var is None or var.address != address or \
                var.type.type_class != TypeClass.StructureTypeClass:
            raise TypeDecodeError(
                "No structured variable defined at address %#x" % address)
        return var.type

    def read_string(self, address: int, name: str) -> str:
        t = self.__structure_at(address)
        member = t.member_by_name(name)
        if member is None:
            raise TypeDecodeError(
                "Structure `%s` at %#x has no member `%s`" % (str(t), address, name))

        if member.type.width > self.__host.address_size:
            raise TypeDecodeError(
                "Trying to read string from a non-string member type. Address = %#x member = `%s`" % (
                    address, name))

        ptr = self.__read_raw(member.type, address + member.offset)
        length = self.__host.get_string_length(ptr)
        if length is None:
            raise TypeDecodeError("No string at %#x (member `%s` of %#x)" % (ptr, name, address))

        return escape_bytes(self.__host.read(ptr, length))

    def read_var(self, address: int) -> typing.Dict[str, Value]:
        return self.read_value(self.__structure_at(address), address)

    def read_pointer(self, address: int) -> int:
        return self.read_value(IntegerType(self.__host.address_size, False, 'uint64_t'), address)
