# (c) Copyright 2023 Aaron Kimball
"""
Plugin registry.

Plugin classes are declared with the @plugin decorator, which records their kind, name and
description. A declared plugin takes part in create_instance() only while it is
registered, between its initialize() and terminate().

    @plugin('symbol-file', 'wasm_dwarf', 'Wasm DWARF')
    class SymbolFileWasmDWARF(object):
        @staticmethod
        def create_instance(backend, objfile):
            ...
"""

# Every class seen by the @plugin decorator, in declaration order.
DECLARED_PLUGINS = []

# kind -> list of registered PluginInfo, in registration order.
_registry = {}

__default_plugins_loaded = False


class PluginInfo(object):
    def __init__(self, kind, name, description, factory):
        self.kind = kind
        self.name = name
        self.description = description
        self.factory = factory

    def __repr__(self):
        return f'{self.kind}:{self.name} ({self.description})'


def plugin(kind, name, description, factory_name='create_instance'):
    """
    Class decorator that declares a plugin and gives it initialize() / terminate()
    classmethods to register and unregister its factory.
    """
    def _declare(cls):
        cls.PLUGIN_KIND = kind
        cls.PLUGIN_NAME = name
        cls.PLUGIN_DESCRIPTION = description

        def initialize(klass):
            register_plugin(kind, name, description, getattr(klass, factory_name))

        def terminate(klass):
            unregister_plugin(kind, getattr(klass, factory_name))

        cls.initialize = classmethod(initialize)
        cls.terminate = classmethod(terminate)
        DECLARED_PLUGINS.append(cls)
        return cls

    return _declare


def register_plugin(kind, name, description, factory):
    """
    Register a factory for plugins of `kind`. Registering the same factory twice is a no-op.
    """
    entries = _registry.setdefault(kind, [])
    for entry in entries:
        if entry.factory == factory:
            return entry

    info = PluginInfo(kind, name, description, factory)
    entries.append(info)
    return info


def unregister_plugin(kind, factory):
    """
    Remove a registered factory. Returns True if it was registered.
    """
    entries = _registry.get(kind, [])
    for entry in entries:
        if entry.factory == factory:
            entries.remove(entry)
            return True
    return False


def get_plugins(kind):
    """ Return the registered PluginInfo entries for `kind`. """
    return list(_registry.get(kind, []))


def find_plugin(kind, name):
    for entry in _registry.get(kind, []):
        if entry.name == name:
            return entry
    return None


def create_instance(kind, *args, name=None, **kwargs):
    """
    Ask each registered factory of `kind` in turn (or only the one called `name`) to create
    an instance from the arguments. Returns the first non-None instance, or None.
    """
    for entry in get_plugins(kind):
        if name is not None and entry.name != name:
            continue
        instance = entry.factory(*args, **kwargs)
        if instance is not None:
            return instance
    return None


def load_default_plugins():
    """
    Import the modules that declare the built-in plugins and return their classes in
    initialization order: type system, symbol file, process.
    """
    global __default_plugins_loaded
    if not __default_plugins_loaded:
        # Importing these modules populates DECLARED_PLUGINS.
        import wasm_dbg.type_system     # noqa: F401
        import wasm_dbg.symbol_file     # noqa: F401
        import wasm_dbg.stack           # noqa: F401
        __default_plugins_loaded = True

    order = ['type-system', 'symbol-file', 'process']
    builtins = [cls for cls in DECLARED_PLUGINS
                if cls.PLUGIN_KIND in order and cls.__module__.startswith('wasm_dbg.')]
    return sorted(builtins, key=lambda cls: order.index(cls.PLUGIN_KIND))


class PluginRegistryContext(object):
    """
    Registers a set of plugin classes for the lifetime of the context: initialize() in the
    given order on entry, terminate() in reverse order on exit.
    """

    def __init__(self, *plugin_classes):
        self._classes = list(plugin_classes)
        self._initialized = []

    def __enter__(self):
        try:
            for cls in self._classes:
                cls.initialize()
                self._initialized.append(cls)
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.close()
        return False

    def close(self):
        while len(self._initialized):
            cls = self._initialized.pop()
            cls.terminate()


_default_plugin_context = None


def initialize_default_plugins():
    """
    Register the built-in plugins for the life of the process. Safe to call repeatedly.
    """
    global _default_plugin_context
    if _default_plugin_context is None:
        _default_plugin_context = PluginRegistryContext(*load_default_plugins())
        _default_plugin_context.__enter__()


def terminate_default_plugins():
    global _default_plugin_context
    if _default_plugin_context is not None:
        _default_plugin_context.close()
        _default_plugin_context = None
