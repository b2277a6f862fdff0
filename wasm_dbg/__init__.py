# (c) Copyright 2023 Aaron Kimball

import argparse

from .backend import SymbolsBackend
from .term import ConsolePrinter, MsgLevel
from .version import DBG_VERSION_STR, FULL_DBG_VERSION_STR

__version__ = DBG_VERSION_STR


def _parseArgs(argv):
    parser = argparse.ArgumentParser(
        description="Inspect Rust sum types and other types in the DWARF info of a wasm module")
    parser.add_argument("-f", "--file", metavar="wasm_file", required=True)
    parser.add_argument("-t", "--type", metavar="type_name",
                        help="Print the layout and variant structure of a type")
    parser.add_argument("-p", "--prefix", default="",
                        help="List defined type names that begin with this prefix")
    parser.add_argument("-v", "--version", action="version", version=FULL_DBG_VERSION_STR)

    return parser.parse_args(argv)


def main(argv=None):
    args = _parseArgs(argv)
    ret = 0

    console_printer = ConsolePrinter()
    console_printer.start()
    try:
        backend = SymbolsBackend(args.file, console_printer.print_q)
        if not backend.is_debug_info_loaded():
            ret = 1
        elif args.type:
            typ = backend.lookup_type(args.type)
            if typ is None:
                backend.msg_q(MsgLevel.ERR, f'No type named {args.type}')
                ret = 1
            else:
                backend.msg_q(MsgLevel.INFO, backend.describe_type(typ))
        else:
            for name in backend.type_names(args.prefix):
                backend.msg_q(MsgLevel.INFO, name)
    finally:
        console_printer.shutdown()

    return ret
