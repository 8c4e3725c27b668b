import logging
import typing
from collections import defaultdict

from analysis.basic import Module, ModuleAnalysis, ModuleAnalysisManager
from analysis.type_accessor import TypeAccessor, TypeDecodeError
from analysis.rtti.gnu import RTTIAnalysis
from analysis.rtti.inheritance_graph import InheritanceGraph, Node, EdgeFlag, NodeNotFoundError
from core.config import Options
from host.basic import Symbol, SymbolType, FunctionHandle
from host.types import Type, VoidType, PointerType, FunctionType, FunctionParameter, \
    StructureBuilder, void_pointer

logger = logging.getLogger(__file__)


class VtableSlot(object):
    def __init__(self, index: int, address: int, pointer: int, function: FunctionHandle,
                 function_type: FunctionType, name: str):
        self.index = index
        self.address = address
        self.pointer = pointer
        self.function = function
        self.function_type = function_type
        self.name = name

    @property
    def return_type(self) -> Type:
        return self.function_type.return_value

    @property
    def parameters(self) -> typing.List[FunctionParameter]:
        return self.function_type.parameters

    def __repr__(self):
        return '<VtableSlot %d %s @%#x>' % (self.index, self.name, self.pointer)


class VtableDescription(object):
    def __init__(self, node: Node, type_info_pointer: int, start: int):
        self.node = node
        self.type_info_pointer = type_info_pointer
        self.start = start
        self.size = 0
        self.slots: typing.List[VtableSlot] = []
        self.type_name: typing.Optional[str] = None
        self.symbol_name: typing.Optional[str] = None
        self.defined = False

    def __repr__(self):
        return '<VtableDescription %s @%#x size=%d%s>' % (
            self.node.name, self.start, self.size, '' if self.defined else ' undefined')


def has_single_public_base(node: Node) -> bool:
    """no base, or exactly one public non virtual base: the vtable is a flat
    list of the class' virtual methods"""
    if node.is_leaf():
        return True
    if len(node.children) != 1:
        return False
    flags = node.children[0].flags
    return bool(flags & EdgeFlag.PUBLIC) and not (flags & EdgeFlag.VIRTUAL)


class VtableRecoverer(object):
    def __init__(self, module: Module, accessor: TypeAccessor, graph: InheritanceGraph,
                 options: Options):
        self.__module = module
        self.__accessor = accessor
        self.__graph = graph
        self.__options = options
        self.__type_names: typing.Dict[str, int] = defaultdict(int)

    def parse_vtable(self, type_info_pointer: int) -> VtableDescription:
        """type_info_pointer is the vtable slot holding the RTTI address,
        right after offset_to_top.

        Raises NodeNotFoundError if the RTTI was never added to the graph.
        """
        module = self.__module
        rtti_address = self.__accessor.read_pointer(type_info_pointer)
        start = type_info_pointer + module.address_size

        node = self.__graph.get_node_by_addr(rtti_address)
        vtable = VtableDescription(node, type_info_pointer, start)

        if not has_single_public_base(node):
            logger.debug("Found vtable at addr %#x for RTTI at address %#x" % (start, rtti_address))
            logger.info("Node at address %#x has %d children" % (rtti_address, len(node.children)))
            return vtable

        vtable.size = self.find_vtable_size(start)
        logger.info("vtable size = %d" % vtable.size)
        if vtable.size == 0:
            logger.info("No method at %#x, not a vtable for RTTI at %#x" % (start, rtti_address))
            return vtable

        class_name = node.name or "class_%x" % rtti_address
        vtable.slots = self.recover_slots(start, vtable.size)
        type_name, vtable_type = self.create_vtable_type(class_name, vtable.slots)

        module.define_user_data_var(start, vtable_type, self.__options.confidence)
        if self.__options.define_symbols:
            module.define_user_symbol(Symbol(SymbolType.DataSymbol, start, type_name))
            vtable.symbol_name = type_name

        vtable.type_name = type_name
        vtable.defined = True
        logger.debug("Found vtable at addr %#x for RTTI at address %#x (%s)" % (
            start, rtti_address, class_name))
        return vtable

    def find_vtable_size(self, start: int) -> int:
        """There is no reliable way of knowing how large a vtable is, count
        slots pointing to code until one doesn't or the table leaves its
        section."""
        module = self.__module
        ptr_size = module.address_size
        section = module.get_sections_at(start)

        size = 0
        method = module.read_pointer(start)
        while method and module.is_offset_executable(method):
            size += 1

            next_method_ptr = start + ptr_size * size
            if not module.is_valid_offset(next_method_ptr) or \
                    not module.is_offset_readable(next_method_ptr) or \
                    module.get_sections_at(next_method_ptr) != section:
                break
            method = module.read_pointer(next_method_ptr)
        return size

    def resolve_function(self, address: int) -> FunctionHandle:
        functions = self.__module.get_functions_at(address)
        if len(functions) == 0:
            logger.info("No functions at addr %#x. Creating one for default platform" % address)
            return self.__module.create_user_function(address)
        if len(functions) > 1:
            logger.warning("More than one function defined at address %#x. "
                           "Optimistically picking the first one" % address)
        return functions[0]

    def recover_slots(self, start: int, size: int) -> typing.List[VtableSlot]:
        module = self.__module
        ptr_size = module.address_size
        slots = []
        for i in range(size):
            slot_address = start + i * ptr_size
            pointer = self.__accessor.read_pointer(slot_address)
            function = self.resolve_function(pointer)

            old_type = function.type
            if old_type is not None:
                return_type = old_type.return_value
                params = list(old_type.parameters)
            else:
                return_type = VoidType()
                params = []

            # `void *this` until the class layout is known
            this = FunctionParameter(void_pointer(ptr_size), "this")
            if len(params) == 0:
                params.append(this)
            else:
                params[0] = this

            function_type = FunctionType(return_type, params, module.default_calling_convention)
            if self.__options.apply_signatures:
                module.set_function_type(function, function_type)

            name = function.symbol.short_name
            logger.debug("Adding function `%s`" % function_type.render_pointer(name))
            slots.append(VtableSlot(i, slot_address, pointer, function, function_type, name))
        return slots

    def create_vtable_type(self, class_name: str,
                           slots: typing.List[VtableSlot]) -> typing.Tuple[str, Type]:
        ptr_size = self.__module.address_size
        builder = StructureBuilder()
        builder.propagate_data_var_refs = True

        used = set()
        for slot in slots:
            member_name = slot.name
            if member_name in used:
                member_name = "%s_%d" % (slot.name, slot.index)
            used.add(member_name)
            builder.append(PointerType(slot.function_type, ptr_size), member_name)

        type_name = self.__options.vtable_prefix + class_name
        count = self.__type_names[type_name]
        self.__type_names[type_name] += 1
        if count:
            type_name = "%s_%d" % (type_name, count)

        self.__module.define_user_type(type_name, builder.finalize())
        return type_name, self.__module.get_type_by_name(type_name)


class VtableAnalysis(ModuleAnalysis):
    """Visits the inheritance graph derived classes first and recovers the
    vtable behind every data reference to a class' RTTI."""

    @classmethod
    def get_analysis_usage(cls):
        return [RTTIAnalysis]

    def initialize(self, module: Module, mam: ModuleAnalysisManager):
        super().initialize(module, mam)
        self.__rtti: RTTIAnalysis = mam.get_module_analysis(RTTIAnalysis, module)
        self.__recoverer = VtableRecoverer(
            module, self.__rtti.accessor, self.__rtti.graph, mam.get_options())

        self.vtables: typing.List[VtableDescription] = []
        self.skipped: typing.List[VtableDescription] = []
        self.missing: typing.List[int] = []

    def run_on_module(self, module: Module, mam: ModuleAnalysisManager):
        logger.debug("Searching for vtables")

        for node in self.__rtti.graph.walk():
            for addr in module.get_data_refs(node.rtti_address):
                var = module.get_data_var_at(addr)

                # a base class pointer inside another RTTI record
                if var is not None and "_class_type" in var.type_name:
                    continue

                try:
                    vtable = self.__recoverer.parse_vtable(addr)
                except (NodeNotFoundError, TypeDecodeError) as e:
                    logger.warning("%s, skipping the reference at %#x" % (e, addr))
                    self.missing.append(addr)
                    continue

                if vtable.defined:
                    self.vtables.append(vtable)
                elif not has_single_public_base(vtable.node):
                    self.skipped.append(vtable)

    def get_vtables_of(self, node: Node) -> typing.List[VtableDescription]:
        return [vtable for vtable in self.vtables if vtable.node is node]
