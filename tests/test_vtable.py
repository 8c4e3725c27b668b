import logging
import unittest

import pytest

from analysis.basic import ModuleAnalysisManager
from analysis.rtti.gnu import RTTIAnalysis
from analysis.rtti.inheritance_graph import InheritanceGraph, EdgeFlag, Node, Edge, NodeNotFoundError
from analysis.rtti.vtable import VtableAnalysis, VtableRecoverer, has_single_public_base
from core.config import Options
from host.basic import SymbolType
from host.types import FunctionType, FunctionParameter, IntegerType, PointerType, TypeClass
from .helpers import SyntheticBinary


def run_vtables(binary: SyntheticBinary, options: Options = None) -> VtableAnalysis:
    if options is None:
        options = Options(show_progress=False)
    mam = ModuleAnalysisManager(binary.host, options)
    return mam.get_module_analysis(VtableAnalysis)


def recoverer_for(binary: SyntheticBinary, options: Options = None) -> VtableRecoverer:
    options = options or Options(show_progress=False)
    rtti = ModuleAnalysisManager(binary.host, options).get_module_analysis(RTTIAnalysis)
    return VtableRecoverer(binary.host, rtti.accessor, rtti.graph, options)


def test_has_single_public_base():
    assert has_single_public_base(Node(0x10, "Leaf", [], True))
    assert has_single_public_base(Node(0x10, "SI", [Edge(0x20, EdgeFlag.PUBLIC)], True))
    assert not has_single_public_base(Node(0x10, "Private", [Edge(0x20, EdgeFlag.NONE)], True))
    assert not has_single_public_base(Node(0x10, "Virtual", [Edge(0x20, EdgeFlag.PUBLIC | EdgeFlag.VIRTUAL)], True))
    assert not has_single_public_base(Node(0x10, "Multi", [Edge(0x20, EdgeFlag.PUBLIC),
                                                           Edge(0x30, EdgeFlag.PUBLIC)], True))


class TestVtableSize(unittest.TestCase):
    def setUp(self):
        self.binary = SyntheticBinary()
        self.rtti = self.binary.class_type("Base")

    def test_stops_on_non_executable_slot(self):
        methods = [self.binary.function() for _ in range(5)]
        start = self.binary.vtable(self.rtti, methods)
        assert recoverer_for(self.binary).find_vtable_size(start) == 5

    def test_stops_at_section_end(self):
        methods = [self.binary.function() for _ in range(4)]
        start = self.binary.vtable(self.rtti, methods)
        self.binary.host.add_section('.data.rel.ro.local', start + 16, self.binary.DATA + self.binary.SIZE)
        assert recoverer_for(self.binary).find_vtable_size(start) == 2

    def test_stops_at_end_of_image(self):
        binary = self.binary
        binary.pad((binary.SIZE - 0x10) // 8 - 5)
        methods = [binary.function() for _ in range(3)]
        start = binary.words([0, self.rtti] + methods) + 16
        assert start + 3 * 8 == binary.DATA + binary.SIZE
        assert recoverer_for(binary).find_vtable_size(start) == 3

    def test_no_method(self):
        start = self.binary.vtable(self.rtti, [])
        assert recoverer_for(self.binary).find_vtable_size(start) == 0


class TestVtableAnalysis(unittest.TestCase):
    def setUp(self):
        self.binary = SyntheticBinary()
        self.host = self.binary.host

    def test_single_class(self):
        rtti = self.binary.class_type("Base")
        value = self.binary.function("Base::value", FunctionType(
            IntegerType(4, True), [FunctionParameter(IntegerType(8), "arg1")], "sysv"))
        reset = self.binary.function("Base::reset")
        start = self.binary.vtable(rtti, [value, reset])

        analysis = run_vtables(self.binary)
        assert len(analysis.vtables) == 1
        vtable = analysis.vtables[0]
        assert vtable.start == start
        assert vtable.size == 2
        assert vtable.type_name == "vtable_Base"
        assert vtable.symbol_name == "vtable_Base"
        assert [slot.name for slot in vtable.slots] == ["Base::value", "Base::reset"]

        # the first parameter becomes `void *this`, the rest is kept
        slot = vtable.slots[0]
        assert str(slot.return_type) == "int32_t"
        assert [p.name for p in slot.parameters] == ["this"]
        assert str(slot.parameters[0].type) == "void*"
        assert [p.name for p in vtable.slots[1].parameters] == ["this"]

        vtable_type = self.host.get_type_by_name("vtable_Base")
        assert vtable_type.propagate_data_var_refs
        assert [(m.name, m.offset) for m in vtable_type.members] == [("Base::value", 0), ("Base::reset", 8)]
        member_type = vtable_type.members[0].type
        assert isinstance(member_type, PointerType)
        assert member_type.target.type_class == TypeClass.FunctionTypeClass

        var = self.host.get_data_var_at(start)
        assert var.address == start
        assert var.type_name == "vtable_Base"

        symbol = self.host.get_symbol_at(start)
        assert symbol.type == SymbolType.DataSymbol
        assert symbol.short_name == "vtable_Base"

    def test_signatures_are_optional(self):
        rtti = self.binary.class_type("Base")
        method = self.binary.function("Base::value", FunctionType(
            IntegerType(4, True), [FunctionParameter(IntegerType(8), "a"), FunctionParameter(IntegerType(4), "b")]))
        self.binary.vtable(rtti, [method])

        run_vtables(self.binary)
        function = self.host.get_functions_at(method)[0]
        assert [p.name for p in function.type.parameters] == ["a", "b"]

    def test_apply_signatures(self):
        rtti = self.binary.class_type("Base")
        method = self.binary.function("Base::value", FunctionType(
            IntegerType(4, True), [FunctionParameter(IntegerType(8), "a"), FunctionParameter(IntegerType(4), "b")]))
        self.binary.vtable(rtti, [method])

        run_vtables(self.binary, Options(show_progress=False, apply_signatures=True))
        function = self.host.get_functions_at(method)[0]
        assert [p.name for p in function.type.parameters] == ["this", "b"]
        assert str(function.type.parameters[0].type) == "void*"
        assert function.type.calling_convention == "sysv"

    def test_no_symbol(self):
        rtti = self.binary.class_type("Base")
        start = self.binary.vtable(rtti, [self.binary.function("Base::value")])
        run_vtables(self.binary, Options(show_progress=False, define_symbols=False))
        assert self.host.get_symbol_at(start) is None
        assert self.host.get_data_var_at(start).type_name == "vtable_Base"

    def test_prefix(self):
        rtti = self.binary.class_type("Base")
        self.binary.vtable(rtti, [self.binary.function("Base::value")])
        analysis = run_vtables(self.binary, Options(show_progress=False, vtable_prefix="vt_"))
        assert analysis.vtables[0].type_name == "vt_Base"

    def test_missing_function_is_created(self):
        rtti = self.binary.class_type("Base")
        method = self.binary.function(define=False)
        assert self.host.get_functions_at(method) == []
        self.binary.vtable(rtti, [method])

        analysis = run_vtables(self.binary)
        assert len(self.host.get_functions_at(method)) == 1
        assert analysis.vtables[0].slots[0].name == "sub_%x" % method

    def test_ambiguous_function(self):
        rtti = self.binary.class_type("Base")
        method = self.binary.function("first")
        self.host.add_function(method, "second")
        self.binary.vtable(rtti, [method])

        analysis = run_vtables(self.binary)
        assert analysis.vtables[0].slots[0].name == "first"

    def test_member_name_collision(self):
        rtti = self.binary.class_type("Abstract")
        pure = self.binary.function("__cxa_pure_virtual")
        other = self.binary.function("Abstract::other")
        self.binary.vtable(rtti, [pure, other, pure])

        run_vtables(self.binary)
        names = [m.name for m in self.host.get_type_by_name("vtable_Abstract").members]
        assert names == ["__cxa_pure_virtual", "Abstract::other", "__cxa_pure_virtual_2"]

    def test_type_name_collision(self):
        rtti = self.binary.class_type("Base")
        first = self.binary.vtable(rtti, [self.binary.function("Base::value")])
        second = self.binary.vtable(rtti, [self.binary.function("Base::other")])

        analysis = run_vtables(self.binary)
        assert [v.type_name for v in analysis.vtables] == ["vtable_Base", "vtable_Base_1"]
        assert self.host.get_data_var_at(first).type_name == "vtable_Base"
        assert self.host.get_data_var_at(second).type_name == "vtable_Base_1"

    def test_derived_classes_first(self):
        base = self.binary.class_type("Base")
        derived = self.binary.si_class_type("Derived", base)
        self.binary.vtable(base, [self.binary.function("Base::value")])
        self.binary.vtable(derived, [self.binary.function("Derived::value"), self.binary.function("Derived::extra")])

        analysis = run_vtables(self.binary)
        assert [v.node.name for v in analysis.vtables] == ["Derived", "Base"]
        assert [v.size for v in analysis.vtables] == [2, 1]

    def test_rtti_base_pointers_are_not_vtables(self):
        base = self.binary.class_type("Base")
        self.binary.si_class_type("Derived", base)
        # right behind Derived's __base_type, looks like a method slot
        self.binary.words([self.binary.function("not_a_method")])
        self.binary.pad()

        analysis = run_vtables(self.binary)
        assert analysis.vtables == []
        assert self.host.get_type_by_name("vtable_Base") is None

    def test_vmi_single_public_base(self):
        base = self.binary.class_type("Base")
        derived = self.binary.vmi_class_type("Derived", [(base, 0x2)])
        self.binary.vtable(derived, [self.binary.function("Derived::value")])

        analysis = run_vtables(self.binary)
        assert [v.type_name for v in analysis.vtables] == ["vtable_Derived"]

    def test_multiple_bases_are_skipped(self):
        a = self.binary.class_type("A")
        b = self.binary.class_type("B")
        multi = self.binary.vmi_class_type("Multi", [(a, 0x2), (b, (8 << 8) | 0x2)])
        primary = self.binary.vtable(multi, [self.binary.function("Multi::f")])
        secondary = self.binary.vtable(multi, [self.binary.function("Multi::g")], offset_to_top=-8 % (1 << 64))

        analysis = run_vtables(self.binary)
        assert analysis.vtables == []
        assert sorted(v.start for v in analysis.skipped) == [primary, secondary]
        assert all(not v.defined for v in analysis.skipped)
        assert self.host.get_type_by_name("vtable_Multi") is None
        assert self.host.get_data_var_at(primary) is None

    def test_virtual_base_is_skipped(self):
        base = self.binary.class_type("Base")
        derived = self.binary.vmi_class_type("Derived", [(base, 0x1)])
        self.binary.vtable(derived, [self.binary.function("Derived::value")])

        analysis = run_vtables(self.binary)
        assert analysis.vtables == []
        assert [v.node.name for v in analysis.skipped] == ["Derived"]

    def test_reference_without_methods(self):
        rtti = self.binary.class_type("Base")
        # e.g. a catch clause type table
        self.binary.words([rtti, 0])

        analysis = run_vtables(self.binary)
        assert analysis.vtables == []
        assert analysis.skipped == []

    def test_get_vtables_of(self):
        base = self.binary.class_type("Base")
        other = self.binary.class_type("Other")
        self.binary.vtable(base, [self.binary.function("Base::value")])
        self.binary.vtable(other, [self.binary.function("Other::value")])

        analysis = run_vtables(self.binary)
        assert [v.node.rtti_address for v in analysis.vtables] == [base, other]
        for vtable in analysis.vtables:
            assert analysis.get_vtables_of(vtable.node) == [vtable]
        assert analysis.get_vtables_of(Node(base, "Base")) == []


def test_unknown_rtti():
    binary = SyntheticBinary()
    binary.class_type("Base")
    slot = binary.words([0, 0x7777])
    recoverer = recoverer_for(binary)
    with pytest.raises(NodeNotFoundError):
        recoverer.parse_vtable(slot + 8)


def test_create_vtable_type_names():
    binary = SyntheticBinary()
    recoverer = VtableRecoverer(binary.host, None, InheritanceGraph(), Options())
    name, t = recoverer.create_vtable_type("Base", [])
    assert name == "vtable_Base"
    assert t.registered_name == "vtable_Base"
    assert recoverer.create_vtable_type("Base", [])[0] == "vtable_Base_1"
    assert recoverer.create_vtable_type("Base", [])[0] == "vtable_Base_2"


def test_warning_on_ambiguous_function(caplog):
    binary = SyntheticBinary()
    method = binary.function("first")
    binary.host.add_function(method, "second")
    recoverer = VtableRecoverer(binary.host, None, InheritanceGraph(), Options())
    with caplog.at_level(logging.WARNING):
        function = recoverer.resolve_function(method)
    assert function.name == "first"
    assert "More than one function" in caplog.text


def test_unreadable_reference_is_skipped(monkeypatch):
    binary = SyntheticBinary()
    base = binary.class_type("Base")
    binary.vtable(base, [binary.function("Base::value")])

    host = binary.host
    refs = host.get_data_refs
    # an unmapped reference first, the scan has to keep going after it
    monkeypatch.setattr(host, "get_data_refs", lambda addr: [0x10] + refs(addr))

    analysis = run_vtables(binary)
    assert analysis.missing == [0x10]
    assert [v.node.name for v in analysis.vtables] == ["Base"]
