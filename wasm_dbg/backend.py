# (c) Copyright 2023 Aaron Kimball
#
# Symbols session state: configuration, console messages, and the module, symbol file,
# type system and process that answer type and location queries.

import importlib.resources as resources
import os
import os.path
import time
import traceback

import wasm_dbg.eval_location as el
import wasm_dbg.objfile as objfile
import wasm_dbg.plugins as plugins
import wasm_dbg.serialize as serialize
import wasm_dbg.symbol_file as symbol_file
import wasm_dbg.term as term
from wasm_dbg.term import MsgLevel
from wasm_dbg.type_system import ExtendedTypeSystem

_LOCAL_CONF_FILENAME = os.path.expanduser("~/.wasm_dbg.conf")

_DEFAULT_ARCH = 'wasm32'

_dbg_conf_keys = [
    "dbg.colors",
    "dbg.conf.formatversion",
    'dbg.print_die.offset',     # verboseprint() the DIE at this offset when it is resolved.
    "dbg.verbose",
    "wasm.arch",                # Name of the arch profile in wasm_dbg/arch/ to load.
]


def _silent(*args):
    """
        dummy method to turn verboseprint() calls to nothing
    """
    pass


def _load_conf_module(module_name, resource_name, print_q):
    """
        Open a resource (file) within a module with a '.conf' extension and treat it like python
        code; execute it in a sheltered environment and return the processed globals as a k-v map.

        We use this for cpu architecture (arch) definitions.
    """
    if not resource_name:
        return None  # Nothing to load.

    conf_resource_name = resource_name.strip() + ".conf"
    conf = {}  # Create an empty environment in which to run the config code.

    def _include_fn(extra_resource_name):
        """
            Provide an 'include' method within the exec() scope so a .conf file can include
            more .conf files from the same module.
        """
        included_map = _load_conf_module(module_name, extra_resource_name, print_q) or {}
        conf.update(included_map)

    try:
        conf_text = resources.files(module_name).joinpath(conf_resource_name).read_text()
        conf['include'] = _include_fn
        exec(conf_text, conf, conf)
    except Exception as e:
        print_q.put((f"Error loading config profile {conf_resource_name}: {e}", MsgLevel.ERR))
        return None

    # Pull python internals and the include() fn out of the globals map we're using as config.
    for key in [k for k in conf.keys() if k == 'include' or k.startswith('__')]:
        del conf[key]

    print_q.put((f"Loading config profile: {conf_resource_name}; read {len(conf)} keys",
                 MsgLevel.INFO))
    return conf


class SymbolsBackend(object):
    """
        Main session state object.
    """

    def __init__(self, module_filename, print_q, force_config=None):
        """
        @param module_filename the wasm module whose debug info we load; may be None.
        @param print_q the queue that connects us to stdout/ConsolePrinter
        @param force_config if not None, provides config inputs and suppresses loading from
            user config file. Also suppresses subsequent writes to user config file if settings
            change.
        """
        self._print_q = print_q

        self.module_filename = module_filename
        if self.module_filename:
            self.module_filename = os.path.realpath(self.module_filename)

        self.verboseprint = _silent  # verboseprint() method is either _silent() or _verbose_print_all()

        plugins.initialize_default_plugins()

        # Save config changes to file unless we were given a canned config.
        self._do_persist_config_changes = (force_config is None)
        self._init_config_from_file(force_config)

        self._init_clear_module_state()
        self._try_read_module()

    def _init_clear_module_state(self):
        self._loaded_debug_info = False
        self._objfile = None
        self._symbol_file = symbol_file.SymbolFileWasmDWARF(self, None)  # No types, but can
                                                                         # still evaluate locations.
        self._process = None

    def msg_q(self, color, *args):
        """
        Enqueue a msg for printing to the console. Adds the stringified message and color/priority
        level to the print queue.

        @param color a MsgLevel enum
        @param args a set of arguments to stringify and concatenate.
        """
        def _str_fn(x):
            if isinstance(x, str):
                return x
            else:
                return repr(x)

        msg_str = "".join(map(_str_fn, args))
        self._print_q.put((msg_str, color))

    def close(self):
        self._init_clear_module_state()

    ###### Configuration file / config key management functions.

    def _set_conf_defaults(self, conf_map=None):
        """
        Populate conf_map with all our config keys, and initialize any default values.
        """
        if conf_map is None:
            conf_map = {}

        for k in _dbg_conf_keys:
            conf_map[k] = None

        conf_map["dbg.conf.formatversion"] = serialize.DBG_CONF_FMT_VERSION
        conf_map["dbg.verbose"] = False
        conf_map["dbg.colors"] = True
        conf_map["wasm.arch"] = _DEFAULT_ARCH

        return conf_map

    def _init_config_from_file(self, force_config=None):
        """
        If the user has a config file (see _LOCAL_CONF_FILENAME) then initialize self._config
        from that.
        """
        defaults = self._set_conf_defaults()
        if force_config is not None:
            defaults.update(force_config)

        if force_config is None and os.path.exists(_LOCAL_CONF_FILENAME):
            new_conf = serialize.load_config_file(self._print_q, _LOCAL_CONF_FILENAME,
                                                  'config', defaults)
        else:
            new_conf = defaults

        # Drop any keys that don't belong to this version of the tool.
        self._config = { k: new_conf[k] for k in _dbg_conf_keys }
        self._arch = {}  # CPU architecture-specific config (filled from conf file)

        self._config_verbose_print()
        self._load_arch()

        if force_config is None:
            self.verboseprint("Loaded config from file: ", _LOCAL_CONF_FILENAME)
        else:
            self.verboseprint("Used programmatic configuration")
        self.verboseprint("Loaded configuration: ", self._config)

    def _persist_config(self):
        """
        Write the current config out to a file to reload the next time.
        """
        if not self._do_persist_config_changes:
            return

        self._config["dbg.conf.formatversion"] = serialize.DBG_CONF_FMT_VERSION
        serialize.persist_config_file(_LOCAL_CONF_FILENAME, 'config', self._config)

    def _load_arch(self):
        """
        Load the arch-specific config named by the wasm.arch key.
        """
        arch_name = self.get_conf("wasm.arch")
        new_conf = _load_conf_module("wasm_dbg.arch", arch_name, self._print_q)
        if not new_conf:
            return  # Nothing to load.

        self._arch = new_conf
        self._process = None

        # Clear cached architecture parameters in DWARFExprMachine
        el.DWARFExprMachine.hard_reset_state()

    def set_conf(self, key, val):
        """
        Set a key-value pair in the configuration map.
        Then process any triggers associated with that key.
        """
        if key not in _dbg_conf_keys:
            raise KeyError("Not a valid conf key: %s" % key)

        self._config[key] = val

        # Process triggers for specific keys
        if key == "wasm.arch":
            self._load_arch()
        if key == "dbg.verbose" or key == "dbg.colors":
            self._config_verbose_print()

        self._persist_config()  # Write changes to conf file.

    def _make_verbose_print_fn(self):
        """
        Return a 'verboseprint()' method that curries the self._print_q field.
        """

        def _verbose_print_all(*args):
            """
            Verbose printing method that lazily concatenates its arguments rather than requiring
            callers to compute an f'string that might get swallowed by _silent() if verbose
            printing is disabled.
            """
            self.msg_q(MsgLevel.DEBUG, *args)

        return _verbose_print_all

    def _config_verbose_print(self):
        term.set_use_colors(self._config['dbg.colors'])
        if self._config['dbg.verbose']:
            self.verboseprint = self._make_verbose_print_fn()
        else:
            self.verboseprint = _silent

    def get_conf(self, key):
        if key not in _dbg_conf_keys:
            raise KeyError("Not a valid conf key: %s" % key)
        return self._config[key]

    def get_full_config(self):
        return self._config.items()

    def get_conf_keys(self):
        """
        Return the set of valid configuration keys for use with 'set'.
        """
        return _dbg_conf_keys

    def get_arch_conf(self, key):
        """
        Return an architecture-specific property setting, or None if the architecture
        lacks the requested property definition.
        """
        return self._arch.get(key)

    def get_full_arch_config(self):
        return self._arch.items()

    ###### Module and symbol functions

    def replace_module(self, module_filename):
        """
        Forget any prior module and load symbols and types from a new one.
        If module_filename is None, just forget what we knew from any prior module.
        """
        self._init_clear_module_state()

        self.module_filename = module_filename
        if self.module_filename:
            self.module_filename = os.path.realpath(self.module_filename)

        self._try_read_module()

    def _try_read_module(self):
        """
        Try to read the module and its debug info. If there is an exception in this process,
        report it to the user and reset our internal state.
        """
        try:
            self._read_module()
        except (OSError, objfile.WasmFormatError) as e:
            self.msg_q(MsgLevel.ERR, f'Error while reading wasm module: {e}.')
            self.msg_q(MsgLevel.ERR, 'Could not load symbols or type information.')
            if self.get_conf("dbg.verbose"):
                tb_lines = traceback.extract_tb(e.__traceback__)
                self.verboseprint("".join(traceback.format_list(tb_lines)))

            self._init_clear_module_state()

    def _read_module(self):
        if self.module_filename is None:
            self.msg_q(MsgLevel.WARN, "No wasm module provided; cannot load symbols.")
            return

        start_time = time.time()
        self._objfile = objfile.WasmObjectFile(self.module_filename)
        sym_file = plugins.create_instance('symbol-file', self, self._objfile)
        if sym_file is None:
            self.msg_q(MsgLevel.WARN, f'No DWARF debug info in {self.module_filename}')
            return

        self._symbol_file = sym_file
        self._loaded_debug_info = True
        self.verboseprint(f'Read module in {time.time() - start_time:.3f}s')

    def is_debug_info_loaded(self):
        """ Return True if we successfully loaded debug info from a module. """
        return self._loaded_debug_info

    def get_objfile(self):
        return self._objfile

    def get_symbol_file(self):
        return self._symbol_file

    def get_type_system(self):
        return self._symbol_file.get_type_system()

    def get_process(self):
        if self._process is None:
            self._process = plugins.create_instance(
                'process', self, self.get_arch_conf('instruction_set'))
        return self._process

    ###### Types

    def lookup_type(self, name):
        """
        Return the completed type with the fully-qualified name `name`, or None.
        """
        typ = self._symbol_file.find_type_by_name(name)
        if typ is not None:
            self.complete_type(typ)
        return typ

    def type_names(self, prefix=None):
        return self._symbol_file.type_names(prefix)

    def complete_type(self, typ):
        type_system = typ.type_system or self.get_type_system()
        return type_system.complete_type(typ)

    def get_bit_size(self, typ):
        type_system = typ.type_system or self.get_type_system()
        return type_system.get_bit_size(typ)

    def get_extended_type_info(self, typ):
        return ExtendedTypeSystem.extended_type_info_for(typ)

    def describe_type(self, typ):
        """
        Return a printable multi-line report of a type's layout and any variant structure.
        """
        lines = [f'{typ!r}', f'bit size: {self.get_bit_size(typ)}']
        info = self.get_extended_type_info(typ)
        if info is not None:
            for param in info.template_parameters:
                lines.append(f'template param {param}')
            for variant_part in info.variant_parts:
                lines.append(f'{variant_part}')
        return '\n'.join(lines)

    ###### Locations

    def evaluate_location(self, expr, debugger_proxy, frame_offset, size=None, frame_base=None):
        """
        Evaluate a DWARF location expression against a paused wasm instance and return the
        value there, with the ExprFlags describing how it was found.

        @param expr the DW_AT_location expression bytes.
        @param debugger_proxy the proxy.DebuggerProxy for the paused runtime.
        @param frame_offset the code offset of the current frame.
        @param size the number of bytes to read for values in linear memory.
        @param frame_base the enclosing function's DW_AT_frame_base expression, if any.
        @raise DWARFExprError if the expression cannot be evaluated.
        @raise MemoryReadError if linear memory cannot be read.
        """
        process = self.get_process()
        if process is None:
            raise el.DWARFExprError(f'Cannot debug arch {self.get_arch_conf("instruction_set")}')
        process.set_proxy_and_frame_offset(debugger_proxy, frame_offset)

        machine = el.DWARFExprMachine(expr, self, self._symbol_file, process)
        if frame_base is not None:
            machine.setFrameBase(frame_base)

        with symbol_file.ProxyValueLoader(self._symbol_file, debugger_proxy):
            return machine.access(size=size)
