"""JSON Store — change-observing containers.

Every dict and list inside a store's data tree is an :class:`ObservableDict`
or :class:`ObservableList`. Each mutation is applied first, then the
``on_change`` callback the container was bound with is called exactly once,
however many low-level element operations the mutation involved. Mutations
that turn out to change nothing do not call it at all.

Both classes subclass the builtin container, so ``json.dumps``,
``isinstance(x, dict)`` and equality against plain values keep working.
"""

import copy
from typing import Any, Callable, Iterable, Optional

ChangeCallback = Callable[[], None]

_MISSING = object()


def observe(value: Any, on_change: Optional[ChangeCallback]) -> Any:
    """Return *value* with every container in it bound to *on_change*.

    Nested containers are wrapped depth-first, before their parent. Values
    that are unbound or already bound to *on_change* are re-bound in place,
    which makes installing interception over a tree idempotent. Values
    bound to some other callback are copied, so they keep reporting to
    their own owner. Tuples become lists. Primitives are returned unchanged.
    """
    if isinstance(value, (ObservableDict, ObservableList)):
        if value._on_change is not None and value._on_change != on_change:
            value = copy.deepcopy(value)
        else:
            value.bind(on_change)
            return value
    if isinstance(value, dict):
        return ObservableDict(value, on_change)
    if isinstance(value, (list, tuple)):
        return ObservableList(value, on_change)
    return value


def is_observable(value: Any) -> bool:
    return isinstance(value, (ObservableDict, ObservableList))


class _Observable:
    _on_change: Optional[ChangeCallback] = None

    def bind(self, on_change: Optional[ChangeCallback]) -> None:
        """Bind this container and everything below it to *on_change*."""
        self._on_change = on_change
        for child in self._children():
            if is_observable(child):
                child.bind(on_change)

    def _children(self) -> Iterable[Any]:
        raise NotImplementedError

    def _wrap(self, value: Any) -> Any:
        return observe(value, self._on_change)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()


class ObservableDict(_Observable, dict):
    """A dict that reports every mutation to its ``on_change`` callback."""

    def __init__(self, data=(), on_change: Optional[ChangeCallback] = None, **kwargs):
        dict.__init__(self)
        self._on_change = on_change
        for key, value in dict(data, **kwargs).items():
            dict.__setitem__(self, key, self._wrap(value))

    def _children(self):
        return dict.values(self)

    def __setitem__(self, key, value):
        dict.__setitem__(self, key, self._wrap(value))
        self._changed()

    def __delitem__(self, key):
        dict.__delitem__(self, key)
        self._changed()

    def discard(self, key) -> bool:
        """Delete *key* if present. Returns whether anything was removed."""
        if key not in self:
            return False
        del self[key]
        return True

    def update(self, *args, **kwargs):
        items = dict(*args, **kwargs)
        if not items:
            return
        for key, value in items.items():
            dict.__setitem__(self, key, self._wrap(value))
        self._changed()

    def __ior__(self, other):
        self.update(other)
        return self

    def setdefault(self, key, default=None):
        if key in self:
            return dict.__getitem__(self, key)
        value = self._wrap(default)
        dict.__setitem__(self, key, value)
        self._changed()
        return value

    def pop(self, key, default=_MISSING):
        if key not in self:
            if default is _MISSING:
                raise KeyError(key)
            return default
        value = dict.pop(self, key)
        self._changed()
        return value

    def popitem(self):
        item = dict.popitem(self)
        self._changed()
        return item

    def clear(self):
        if not self:
            return
        dict.clear(self)
        self._changed()

    def __copy__(self):
        return dict(self)

    def __deepcopy__(self, memo):
        return {key: copy.deepcopy(value, memo) for key, value in dict.items(self)}

    def __reduce__(self):
        return (dict, (dict(self),))


class ObservableList(_Observable, list):
    """A list that reports every mutation to its ``on_change`` callback.

    Bulk operations such as :meth:`extend`, :meth:`sort` or slice assignment
    are single mutations: one callback, one return value.
    """

    def __init__(self, data=(), on_change: Optional[ChangeCallback] = None):
        list.__init__(self)
        self._on_change = on_change
        list.extend(self, (self._wrap(v) for v in data))

    def _children(self):
        return list.__iter__(self)

    def __setitem__(self, index, value):
        if isinstance(index, slice):
            value = [self._wrap(v) for v in value]
        else:
            value = self._wrap(value)
        list.__setitem__(self, index, value)
        self._changed()

    def __delitem__(self, index):
        before = len(self)
        list.__delitem__(self, index)
        if len(self) != before:
            self._changed()

    def append(self, value):
        list.append(self, self._wrap(value))
        self._changed()

    def extend(self, values):
        wrapped = [self._wrap(v) for v in values]
        if not wrapped:
            return
        list.extend(self, wrapped)
        self._changed()

    def __iadd__(self, values):
        self.extend(values)
        return self

    def __imul__(self, n):
        if not self or n == 1:
            return self
        list.__imul__(self, n)
        self._changed()
        return self

    def insert(self, index, value):
        list.insert(self, index, self._wrap(value))
        self._changed()

    def remove(self, value):
        list.remove(self, value)
        self._changed()

    def pop(self, index=-1):
        value = list.pop(self, index)
        self._changed()
        return value

    def clear(self):
        if not self:
            return
        list.clear(self)
        self._changed()

    def sort(self, *, key=None, reverse=False):
        before = list(self)
        list.sort(self, key=key, reverse=reverse)
        if list(self) != before:
            self._changed()

    def reverse(self):
        before = list(self)
        list.reverse(self)
        if list(self) != before:
            self._changed()

    def __copy__(self):
        return list(self)

    def __deepcopy__(self, memo):
        return [copy.deepcopy(value, memo) for value in list.__iter__(self)]

    def __reduce__(self):
        return (list, (list(self),))
