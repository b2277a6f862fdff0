# (c) Copyright 2023 Aaron Kimball
"""
Target architecture profiles.

Each `<name>.conf` resource in this package is python evaluated in a sheltered namespace
by `backend._load_conf_module()`; the resulting globals become the arch config.
"""
