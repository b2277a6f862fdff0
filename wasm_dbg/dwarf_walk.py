# (c) Copyright 2023 Aaron Kimball
#
# Walk the immediate children of a DIE and read DIE attributes.

from elftools.common.exceptions import DWARFError


class ChildrenByTag(object):
    """
    Lazy view over the direct children of a DIE whose tag matches.

    `tag` is either a DW_TAG_* name or a predicate fn(tag) -> bool. Only immediate children
    are visited; grandchildren never are. Each iteration walks the DIE afresh, so the same
    view may be iterated any number of times.
    """

    def __init__(self, die, tag):
        self._die = die
        if callable(tag):
            self._matches = tag
        else:
            self._matches = lambda child_tag: child_tag == tag

    def __iter__(self):
        for child in self._die.iter_children():
            if child.tag and self._matches(child.tag):
                yield child


def iter_children_by_tag(die, tag):
    """
    Return a restartable iterable of the children of `die` that carry `tag`.
    """
    return ChildrenByTag(die, tag)


def for_each_child(die, tag, callback):
    """
    Invoke callback(child) for each immediate child of `die` carrying `tag`, in DIE order.
    """
    for child in ChildrenByTag(die, tag):
        callback(child)


def format_die_offset(die):
    """ Render a DIE offset the way diagnostics refer to it. """
    return f'{die.offset:#010x}'


def die_attr(die, name, default_value=None):
    """
    Look up attribute `name` (e.g. 'DW_AT_name') within the DIE; if not found, use default_value.
    String values are decoded to str.
    """
    try:
        val = die.attributes[name].value
    except KeyError:
        return default_value

    if isinstance(val, bytes):
        val = val.decode("utf-8")
    return val


def die_attr_unsigned(die, name):
    """
    Return the value of an integer-valued attribute, or None if the attribute is absent or
    holds something other than an unsigned constant (e.g. a block or expression).
    """
    val = die_attr(die, name)
    if isinstance(val, bool) or not isinstance(val, int) or val < 0:
        return None
    return val


def die_name(die):
    return die_attr(die, 'DW_AT_name')


def die_ref(die, name):
    """
    Follow reference attribute `name` to the DIE it names.
    Returns None if the attribute is missing or does not hold a usable reference.
    """
    if name not in die.attributes:
        return None

    try:
        return die.get_DIE_from_attribute(name)
    except (KeyError, ValueError, DWARFError):
        return None


def cu_language(die):
    """
    Return the DW_AT_language of the compilation unit holding `die`, or None.
    """
    cu = getattr(die, 'cu', None)
    if cu is None:
        return None
    return die_attr(cu.get_top_DIE(), 'DW_AT_language')
