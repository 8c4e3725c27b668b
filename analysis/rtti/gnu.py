import enum
import logging
import typing

import tqdm

from analysis.basic import Module, ModuleAnalysis, ModuleAnalysisManager
from analysis.type_accessor import TypeAccessor, TypeDecodeError
from analysis.rtti.inheritance_graph import InheritanceGraph, EdgeFlag, Edge
from host.types import Type, IntegerType, ArrayType, StructureBuilder, BaseStructure, \
    void_pointer, char_pointer

logger = logging.getLogger(__file__)

CXXABI_NAMESPACE = "_ZTVN10__cxxabiv1"
MAX_BASE_COUNT = 256


def base_count_offset(address_size: int) -> int:
    """__flags and __base_count are the two u32 after the two pointers"""
    return 2 * address_size + 4


VMI_BASE_COUNT_OFFSET = base_count_offset(8)


class TypeInfoKind(enum.Enum):
    CLASS = 0
    VMI_CLASS = 1
    SI_CLASS = 2
    FUNCTION = 3
    PBASE = 4
    POINTER = 5
    FUNDAMENTAL = 6
    ARRAY = 7
    ENUM = 8
    POINTER_TO_MEMBER = 9
    UNSUPPORTED = 10


# vtable symbols of the type_info derived classes
TYPE_INFO_CLASSES = {
    "_ZTVN10__cxxabiv116__enum_type_infoE": TypeInfoKind.ENUM,
    "_ZTVN10__cxxabiv117__class_type_infoE": TypeInfoKind.CLASS,
    "_ZTVN10__cxxabiv117__array_type_infoE": TypeInfoKind.ARRAY,
    "_ZTVN10__cxxabiv121__vmi_class_type_infoE": TypeInfoKind.VMI_CLASS,
    "_ZTVN10__cxxabiv120__si_class_type_infoE": TypeInfoKind.SI_CLASS,
    "_ZTVN10__cxxabiv120__function_type_infoE": TypeInfoKind.FUNCTION,
    "_ZTVN10__cxxabiv119__pointer_type_infoE": TypeInfoKind.POINTER,
    "_ZTVN10__cxxabiv117__pbase_type_infoE": TypeInfoKind.PBASE,
    "_ZTVN10__cxxabiv123__fundamental_type_infoE": TypeInfoKind.FUNDAMENTAL,
    "_ZTVN10__cxxabiv129__pointer_to_member_type_infoE": TypeInfoKind.POINTER_TO_MEMBER,
}


def classify(symbol_name: str) -> typing.Optional[TypeInfoKind]:
    """Kind of type_info a relocation against symbol_name starts.

    Returns None when the symbol is not a __cxxabiv1 vtable at all.
    """
    if CXXABI_NAMESPACE not in symbol_name:
        return None
    return TYPE_INFO_CLASSES.get(symbol_name, TypeInfoKind.UNSUPPORTED)


def strip_length_prefix(name: str) -> str:
    """'7Derived' -> 'Derived'"""
    i = 0
    while i < len(name) and '0' <= name[i] <= '9':
        i += 1
    return name[i:]


class TypeInfoLayouts(object):
    """Structure types describing each type_info record, defined once per
    binary and reused by name afterwards."""

    CLASS_TYPE = "__class_type"
    SI_CLASS_TYPE = "__si_class_type"
    VMI_CLASS_TYPE = "__vmi_class_type_%d"
    BASE_CLASS_TYPE = "__base_class_type_info"
    PBASE_CLASS_TYPE = "__pbase_class_type"
    POINTER_TO_MEMBER_TYPE = "__pointer_to_member_class_type"

    def __init__(self, module: Module):
        self.__module = module

    def __get_or_define(self, name: str, build: typing.Callable[[], Type]) -> Type:
        t = self.__module.get_type_by_name(name)
        if t is not None:
            return t
        self.__module.define_user_type(name, build())
        return self.__module.get_type_by_name(name)

    def __type_info_builder(self) -> StructureBuilder:
        size = self.__module.address_size
        builder = StructureBuilder()
        builder.append(void_pointer(size), "type_info")
        builder.append(char_pointer(size), "__type_name")
        return builder

    def define_class_type(self) -> Type:
        return self.__get_or_define(
            self.CLASS_TYPE, lambda: self.__type_info_builder().finalize())

    def define_si_class_type(self) -> Type:
        def build():
            builder = self.__type_info_builder()
            builder.append(void_pointer(self.__module.address_size), "__base_type")
            return builder.finalize()
        return self.__get_or_define(self.SI_CLASS_TYPE, build)

    def define_base_class(self) -> Type:
        def build():
            builder = StructureBuilder()
            builder.append(void_pointer(self.__module.address_size), "__base_type")
            size = self.__module.address_size
            builder.append(IntegerType(size, False, "uint%d_t" % (size * 8)), "__offset_flags")
            return builder.finalize()
        return self.__get_or_define(self.BASE_CLASS_TYPE, build)

    def define_vmi_class_type(self, base_count: int) -> Type:
        def build():
            base_class = self.define_base_class()
            builder = self.__type_info_builder()
            builder.append(IntegerType(4, False, "unsigned int"), "__flags")
            builder.append(IntegerType(4, False, "unsigned int"), "__base_count")
            builder.append(ArrayType(base_class, base_count), "__base_info")
            return builder.finalize()
        return self.__get_or_define(self.VMI_CLASS_TYPE % base_count, build)

    def define_pbase_class_type(self) -> Type:
        def build():
            builder = self.__type_info_builder()
            builder.append(IntegerType(4, False, "unsigned int"), "__flags")
            builder.append(void_pointer(self.__module.address_size), "__pointee")
            return builder.finalize()
        return self.__get_or_define(self.PBASE_CLASS_TYPE, build)

    def define_pointer_to_member_type(self) -> Type:
        def build():
            builder = StructureBuilder()
            builder.base_structures = [BaseStructure(self.define_pbase_class_type(), 0)]
            builder.append(void_pointer(self.__module.address_size), "__context")
            return builder.finalize()
        return self.__get_or_define(self.POINTER_TO_MEMBER_TYPE, build)

    def layout_for(self, kind: TypeInfoKind, address: int) -> typing.Optional[Type]:
        if kind in (TypeInfoKind.CLASS, TypeInfoKind.FUNDAMENTAL, TypeInfoKind.ARRAY,
                    TypeInfoKind.ENUM, TypeInfoKind.FUNCTION):
            return self.define_class_type()
        elif kind == TypeInfoKind.VMI_CLASS:
            data = self.__module.read(address + base_count_offset(self.__module.address_size), 4)
            if len(data) != 4:
                raise TypeDecodeError("Unable to read __base_count at %#x" % address)
            base_count = int.from_bytes(data, self.__module.endianness)
            if base_count > MAX_BASE_COUNT:
                raise TypeDecodeError("%#x: over %d base classes (%d)" % (address, MAX_BASE_COUNT, base_count))
            return self.define_vmi_class_type(base_count)
        elif kind == TypeInfoKind.SI_CLASS:
            return self.define_si_class_type()
        elif kind in (TypeInfoKind.PBASE, TypeInfoKind.POINTER):
            return self.define_pbase_class_type()
        elif kind == TypeInfoKind.POINTER_TO_MEMBER:
            return self.define_pointer_to_member_type()
        return None


class RTTIAnalysis(ModuleAnalysis):
    """Scans the relocations for type_info records, types them and builds the
    inheritance graph out of their base class lists.
    """

    def initialize(self, module: Module, mam: ModuleAnalysisManager):
        super().initialize(module, mam)
        self.__module = module
        self.__options = mam.get_options()
        self.__accessor = TypeAccessor(module)
        self.__layouts = TypeInfoLayouts(module)
        self.__graph = InheritanceGraph()

        # address of each type_info record still worth a vtable lookup
        self.rtti_addresses: typing.List[int] = []
        self.kinds: typing.Dict[int, TypeInfoKind] = {}
        self.failures: typing.List[typing.Tuple[int, str]] = []

    def run_on_module(self, module: Module, mam: ModuleAnalysisManager):
        logger.debug("Searching for RTTI")
        ranges = module.relocation_ranges
        bar = tqdm.tqdm(ranges, desc="Searching for RTTI", unit="reloc",
                        disable=not self.__options.show_progress)
        for start, _ in bar:
            for reloc in module.get_relocations_at(start):
                if reloc.symbol is None:
                    continue
                self.parse_rtti(start, reloc.symbol.raw_name)

    @property
    def graph(self) -> InheritanceGraph:
        return self.__graph

    @property
    def accessor(self) -> TypeAccessor:
        return self.__accessor

    def parse_rtti(self, address: int, symbol_name: str) -> bool:
        kind = classify(symbol_name)
        if kind is None:
            return False

        self.rtti_addresses.append(address)

        try:
            layout = self.__layouts.layout_for(kind, address)
            if layout is None:
                logger.debug("Unsupported std::type_info derived class at address %#x." % address)
                self.rtti_addresses.pop()
                return False

            self.__module.define_user_data_var(address, layout, self.__options.confidence)

            rtti = self.__accessor.read_var(address)
            raw_name = self.__accessor.read_string(address, "__type_name")
        except TypeDecodeError as e:
            logger.warning("Failed to decode RTTI at %#x : %s" % (address, e))
            self.rtti_addresses.pop()
            self.failures.append((address, str(e)))
            return False

        self.kinds[address] = kind
        name = strip_length_prefix(raw_name)
        logger.debug("Found RTTI at address %#x named `%s`" % (address, raw_name))

        self.__graph.add_node(name, address, self.extract_bases(rtti))
        return True

    @staticmethod
    def extract_bases(rtti: typing.Dict[str, typing.Any]) -> typing.List[Edge]:
        if "__base_count" in rtti:
            # one or more bases, possibly virtual
            children = []
            for i in range(rtti["__base_count"]):
                base_info = rtti["__base_info"][i]
                children.append(Edge(base_info["__base_type"],
                                     EdgeFlag(base_info["__offset_flags"] & 0xff)))
            return children
        elif "__base_type" in rtti:
            # a single, public, non-virtual base
            return [Edge(rtti["__base_type"], EdgeFlag.PUBLIC)]
        return []
