import abc
import typing

from host.basic import Host as Module
from core.config import Options


class Analysis(abc.ABC):

    @classmethod
    def get_analysis_usage(cls) -> typing.Sequence[typing.Type['Analysis']]:
        '''
        This function should return a sequence of needed analysis
        '''
        return []


class ModuleAnalysis(Analysis):

    def initialize(
            self,
            module: Module,
            analysis_manager: 'ModuleAnalysisManager'):
        pass

    @abc.abstractmethod
    def run_on_module(
            self,
            module: Module,
            analysis_manager: 'ModuleAnalysisManager'):
        pass


class ModuleAnalysisManager(object):
    """Runs every module analysis at most once and caches the result.

    Dependencies declared in ``get_analysis_usage`` run first, so asking for
    an analysis is enough to get the whole phase chain in order.
    """

    def __init__(self, module: Module, options: Options = None):
        assert module is not None
        assert isinstance(module, Module)

        self._module = module
        self._options = options if options is not None else Options()
        self._module_analysis = {}

    def get_module_analysis(
            self,
            analysis_class: typing.Type[Analysis],
            module: typing.Optional[Module] = None) -> ModuleAnalysis:

        assert isinstance(module, Module) or (module is None)

        if module is None:
            module = self._module

        assert (self._module == module)

        assert issubclass(analysis_class, ModuleAnalysis)

        module_analysis = self._module_analysis.get(analysis_class)

        if module_analysis is None:
            for dependency in analysis_class.get_analysis_usage():
                self.get_module_analysis(dependency, module)

            module_analysis = analysis_class()
            module_analysis.initialize(module, self)
            module_analysis.run_on_module(module, self)
            self._module_analysis[analysis_class] = module_analysis

        return module_analysis

    def get_module(self) -> Module:
        return self._module

    def get_options(self) -> Options:
        return self._options
