import enum
import typing
import copy


class TypeClass(enum.Enum):
    VoidTypeClass = 0
    BoolTypeClass = 1
    IntegerTypeClass = 2
    FloatTypeClass = 3
    StructureTypeClass = 4
    EnumerationTypeClass = 5
    PointerTypeClass = 6
    ArrayTypeClass = 7
    FunctionTypeClass = 8
    VarArgsTypeClass = 9
    ValueTypeClass = 10
    NamedTypeReferenceClass = 11
    WideCharTypeClass = 12


class Type(object):
    """Host independent type descriptor.

    Descriptors are plain values: hosts translate them to and from their own
    type objects, the decoder only looks at ``type_class`` and ``width``.
    """
    type_class: TypeClass = None

    def __init__(self, width: int):
        self.width = width
        self.registered_name: typing.Optional[str] = None

    @property
    def alignment(self) -> int:
        return max(1, min(self.width, 8))

    def with_name(self, name: str) -> 'Type':
        t = copy.copy(self)
        t.registered_name = name
        return t

    def _render(self) -> str:
        raise NotImplementedError()

    def __str__(self):
        if self.registered_name is not None:
            return self.registered_name
        return self._render()

    def __repr__(self):
        return '<%s %s>' % (type(self).__name__, str(self))


class VoidType(Type):
    type_class = TypeClass.VoidTypeClass

    def __init__(self):
        super().__init__(0)

    def _render(self):
        return 'void'


class BoolType(Type):
    type_class = TypeClass.BoolTypeClass

    def __init__(self, width: int = 1):
        super().__init__(width)

    def _render(self):
        return 'bool'


class IntegerType(Type):
    type_class = TypeClass.IntegerTypeClass

    def __init__(self, width: int, signed: bool = False, alt_name: str = None):
        super().__init__(width)
        self.signed = signed
        self.alt_name = alt_name

    def _render(self):
        if self.alt_name:
            return self.alt_name
        return '%sint%d_t' % ('' if self.signed else 'u', self.width * 8)


class FloatType(Type):
    type_class = TypeClass.FloatTypeClass

    def _render(self):
        return 'float%d' % (self.width * 8)


class PointerType(Type):
    type_class = TypeClass.PointerTypeClass

    def __init__(self, target: Type, width: int = 8):
        super().__init__(width)
        self.target = target
        self.signed = False

    def _render(self):
        if isinstance(self.target, FunctionType):
            return self.target.render_pointer()
        return '%s*' % str(self.target)


class ArrayType(Type):
    type_class = TypeClass.ArrayTypeClass

    def __init__(self, element_type: Type, count: int):
        super().__init__(element_type.width * count)
        self.element_type = element_type
        self.count = count

    @property
    def alignment(self) -> int:
        return self.element_type.alignment

    def _render(self):
        return '%s[%d]' % (str(self.element_type), self.count)


class NamedTypeReferenceType(Type):
    type_class = TypeClass.NamedTypeReferenceClass

    def __init__(self, name: str, width: int = 0):
        super().__init__(width)
        self.name = name

    def _render(self):
        return self.name


class StructureMember(object):
    def __init__(self, type: Type, name: str, offset: int):
        self.type = type
        self.name = name
        self.offset = offset

    def __repr__(self):
        return '<StructureMember %s %s @%#x>' % (str(self.type), self.name, self.offset)


class BaseStructure(object):
    def __init__(self, type: 'StructureType', offset: int = 0):
        assert isinstance(type, StructureType)
        self.type = type
        self.offset = offset


class StructureType(Type):
    type_class = TypeClass.StructureTypeClass

    def __init__(
            self,
            members: typing.List[StructureMember],
            width: int,
            alignment: int = 1,
            base_structures: typing.List[BaseStructure] = None,
            propagate_data_var_refs: bool = False):
        super().__init__(width)
        self.members = list(members)
        self._alignment = alignment
        self.base_structures = list(base_structures or [])
        self.propagate_data_var_refs = propagate_data_var_refs

    @property
    def alignment(self) -> int:
        return self._alignment

    def members_including_inherited(self) -> typing.List[StructureMember]:
        retv = []
        for base in self.base_structures:
            for member in base.type.members_including_inherited():
                retv.append(StructureMember(member.type, member.name, base.offset + member.offset))
        retv.extend(self.members)
        return retv

    def member_by_name(self, name: str) -> typing.Optional[StructureMember]:
        for member in self.members_including_inherited():
            if member.name == name:
                return member
        return None

    def _render(self):
        return 'struct { %s }' % '; '.join(
            '%s %s' % (str(m.type), m.name) for m in self.members_including_inherited())


class FunctionParameter(object):
    def __init__(self, type: Type, name: str = ''):
        self.type = type
        self.name = name

    def __repr__(self):
        return '<FunctionParameter %s %s>' % (str(self.type), self.name)


class FunctionType(Type):
    type_class = TypeClass.FunctionTypeClass

    def __init__(
            self,
            return_value: Type,
            parameters: typing.List[FunctionParameter] = None,
            calling_convention: str = None):
        super().__init__(0)
        self.return_value = return_value
        self.parameters = list(parameters or [])
        self.calling_convention = calling_convention

    def _params(self) -> str:
        return ', '.join('%s %s' % (str(p.type), p.name) if p.name else str(p.type)
                         for p in self.parameters)

    def render_pointer(self, name: str = '') -> str:
        return '%s (*%s)(%s)' % (str(self.return_value), name, self._params())

    def _render(self):
        return '%s (%s)' % (str(self.return_value), self._params())


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


class StructureBuilder(object):
    """Lays out members one after the other at their natural alignment."""

    def __init__(self):
        self.__members: typing.List[StructureMember] = []
        self.__base_structures: typing.List[BaseStructure] = []
        self.__width = 0
        self.__alignment = 1
        self.propagate_data_var_refs = False

    @property
    def base_structures(self) -> typing.List[BaseStructure]:
        return self.__base_structures

    @base_structures.setter
    def base_structures(self, bases: typing.List[BaseStructure]):
        assert len(self.__members) == 0, 'set base structures before appending members'
        self.__base_structures = list(bases)
        for base in self.__base_structures:
            self.__width = max(self.__width, base.offset + base.type.width)
            self.__alignment = max(self.__alignment, base.type.alignment)

    def append(self, type: Type, name: str) -> 'StructureBuilder':
        offset = _align(self.__width, type.alignment)
        self.__members.append(StructureMember(type, name, offset))
        self.__width = offset + type.width
        self.__alignment = max(self.__alignment, type.alignment)
        return self

    @property
    def width(self) -> int:
        return _align(self.__width, self.__alignment)

    def finalize(self) -> StructureType:
        return StructureType(
            self.__members,
            self.width,
            self.__alignment,
            self.__base_structures,
            self.propagate_data_var_refs)


def void_pointer(width: int = 8) -> PointerType:
    return PointerType(VoidType(), width)


def char_pointer(width: int = 8) -> PointerType:
    return PointerType(IntegerType(1, True, 'char'), width)
