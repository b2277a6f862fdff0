# (c) Copyright 2023 Aaron Kimball
#
# Load and save the user's configuration dotfile.

from wasm_dbg.term import MsgLevel

DBG_CONF_FMT_VERSION = 1

_SCALAR_TYPES = (type(None), str, int, float, bool)


def load_config_file(print_q, filename, map_name='config', defaults=None):
    """
        Read a configuration file map.
        This is a python file evaluated in an otherwise-empty namespace.
        Afterward it should hold two variables:
        - `formatversion` specifies this serialization version
        - `{map_name}` is a dict of k-v pairs.

        If `defaults` is a map, then its values populate anything omitted from the loaded map.
        Problems with the file are reported on print_q and the defaults are returned.
    """
    new_conf = dict(defaults or {})

    init_env = { map_name: {} }

    with open(filename, "r") as f:
        conf_text = f.read()

    try:
        exec(conf_text, init_env, init_env)
    except Exception as e:
        print_q.put((f"Warning: error parsing config file '{filename}': {e}", MsgLevel.WARN))
        return new_conf

    fmtver = init_env.get('formatversion')
    if not isinstance(fmtver, int) or fmtver > DBG_CONF_FMT_VERSION:
        print_q.put((f"Error: Cannot read config file '{filename}' with version {fmtver}",
                    MsgLevel.ERR))
        return new_conf

    loaded_conf = init_env[map_name]
    if not isinstance(loaded_conf, dict):
        print_q.put((f"Error in format for config file '{filename}'", MsgLevel.ERR))
        return new_conf

    new_conf.update(loaded_conf)
    return new_conf


def _format_conf_value(v):
    """
        Render a config value as a python literal.
    """
    if isinstance(v, _SCALAR_TYPES):
        return repr(v)
    elif isinstance(v, (bytes, bytearray)):
        return repr(bytes(v))
    elif isinstance(v, (list, tuple)):
        return '[' + ', '.join(map(_format_conf_value, v)) + ']'
    elif isinstance(v, dict):
        entries = [f'{_format_conf_value(k)}: {_format_conf_value(dv)}' for (k, dv) in v.items()]
        return '{' + ', '.join(entries) + '}'
    else:
        raise TypeError(f'Cannot serialize config value of type {v.__class__.__name__}')


def persist_config_file(filename, map_name, data):
    """
        Write configuration information out to a file that load_config_file() can read back.
    """
    with open(filename, "w") as f:
        f.write(f"formatversion = {DBG_CONF_FMT_VERSION}\n")
        f.write(f"{map_name} = {{\n")
        for (k, v) in data.items():
            f.write(f'  {k!r}: {_format_conf_value(v)},\n')
        f.write("}\n")
