from analysis.basic import Module, ModuleAnalysisManager
from analysis.rtti.gnu import RTTIAnalysis
from analysis.rtti.inheritance_graph import EdgeFlag
from analysis.rtti.vtable import VtableAnalysis, VtableDescription
from core.config import Options

import typing
import logging
import json
import pprint
import sys

logger = logging.getLogger(__file__)


def flag_names(flags: EdgeFlag) -> typing.List[str]:
    return [flag.name for flag in (EdgeFlag.PUBLIC, EdgeFlag.VIRTUAL) if flags & flag]


class Launcher(object):
    """Recovers the class hierarchy then the vtables of a module, as one undo
    group: a failure reverts everything the run defined.
    """

    def __init__(self, module: Module, options: Options = None):
        assert isinstance(module, Module)
        self.__module: Module = module
        self.__options: Options = options if options is not None else Options()
        self.__mam: typing.Optional[ModuleAnalysisManager] = None

    @property
    def options(self) -> Options:
        return self.__options

    def run(self) -> 'Launcher':
        with self.__module.undoable_transaction():
            self.__mam = ModuleAnalysisManager(self.__module, self.__options)
            rtti: RTTIAnalysis = self.__mam.get_module_analysis(RTTIAnalysis)
            vtables: VtableAnalysis = self.__mam.get_module_analysis(VtableAnalysis)

        logger.info("%d RTTI records, %d classes, %d vtables defined, %d skipped" % (
            len(rtti.rtti_addresses), len(rtti.graph), len(vtables.vtables), len(vtables.skipped)))
        return self

    @property
    def rtti(self) -> RTTIAnalysis:
        assert self.__mam is not None, "run() first"
        return self.__mam.get_module_analysis(RTTIAnalysis)

    @property
    def vtables(self) -> VtableAnalysis:
        assert self.__mam is not None, "run() first"
        return self.__mam.get_module_analysis(VtableAnalysis)

    @staticmethod
    def __vtable_report(vtable: VtableDescription) -> dict:
        return {
            "address": hex(vtable.start),
            "type": vtable.type_name,
            "symbol": vtable.symbol_name,
            "size": vtable.size,
            "slots": [{
                "address": hex(slot.address),
                "function": hex(slot.pointer),
                "name": slot.name,
                "signature": slot.function_type.render_pointer(slot.name),
            } for slot in vtable.slots],
        }

    def classes(self) -> typing.List[dict]:
        rtti = self.rtti
        vtables = self.vtables
        graph = rtti.graph

        retv = []
        for node in graph.nodes():
            kind = rtti.kinds.get(node.rtti_address)
            bases = []
            for child_id, flags in node.children:
                base = graph.get_node_by_id(child_id)
                bases.append({
                    "name": base.name,
                    "address": hex(child_id),
                    "flags": flag_names(flags),
                })
            retv.append({
                "name": node.name,
                "address": hex(node.rtti_address),
                "kind": kind.name if kind is not None else None,
                "bases": bases,
                "vtables": [self.__vtable_report(v) for v in vtables.get_vtables_of(node)],
                "skipped_vtables": [hex(v.start) for v in vtables.skipped if v.node is node],
            })
        return retv

    def report(self) -> dict:
        return {
            "classes": self.classes(),
            "failures": [{"address": hex(addr), "error": message}
                         for addr, message in self.rtti.failures],
        }

    def generate_report(self, output_name: str = "stdout") -> bool:
        report = self.report()
        if output_name in ("stdout", "stderr"):
            pprint.pprint(report, stream=sys.stdout if output_name == "stdout" else sys.stderr)
        else:
            try:
                with open(output_name, "w") as fd:
                    json.dump(report, fd, indent=4)
            except OSError as e:
                logger.error("failed to save to file : %s" % str(e))
                return False

        return True
