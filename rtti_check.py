import os
import sys
import logging
import argparse

logging.basicConfig()
logger = logging.getLogger()

from core.config import Options
from core.launcher import Launcher
from host.basic import Host


def load_binaryninja(input_file: str) -> Host:
    try:
        import binaryninja
        from host.binja import BinaryNinjaHost
    except ImportError:
        logger.error("unable to import binaryninja, pls install it:)")
        sys.exit(-1)

    view = binaryninja.load(input_file)
    if view is None:
        logger.error('binaryninja failed to open %s' % input_file)
        sys.exit(-1)
    view.update_analysis_and_wait()
    return BinaryNinjaHost(view)


def load_elf(input_file: str) -> Host:
    from host.elf import ElfHost
    try:
        return ElfHost(input_file)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(-1)


BACKENDS = {
    'elf': load_elf,
    'binaryninja': load_binaryninja,
}


def ExecuteRTTICheck(input_file: str, output: str, backend: str = 'elf', options: Options = None) -> bool:
    module = BACKENDS[backend](input_file)
    launcher = Launcher(module, options)
    launcher.run()
    return launcher.generate_report(output)


if __name__ == '__main__':
    parse = argparse.ArgumentParser(description='RTTICheck')
    parse.add_argument('-i', '--input',   type=str, default='',       help='input file', required=True)
    parse.add_argument('-o', '--output',  type=str, default='stdout', help='output')
    parse.add_argument('-b', '--backend', type=str, default='elf',    help='loader', choices=sorted(BACKENDS))
    parse.add_argument('--apply-signatures', action='store_true',     help='retype the functions the vtables point to')
    parse.add_argument('--no-symbols',       action='store_true',     help='do not name the vtables')
    parse.add_argument('--no-progress',      action='store_true',     help='hide the progress bar')
    parse.add_argument('-v', '--verbose',    action='store_true',     help='debug logs')

    p = parse.parse_args()

    logger.setLevel(logging.DEBUG if p.verbose else logging.INFO)

    input_file = p.input
    if os.path.isfile(input_file) == False:
        logger.error('unable to open input file %s' % (input_file))
        sys.exit(-1)

    options = Options(
        show_progress=not p.no_progress,
        apply_signatures=p.apply_signatures,
        define_symbols=not p.no_symbols)

    if not ExecuteRTTICheck(input_file, p.output, p.backend, options):
        sys.exit(-1)
