"""Rendering of dataclasses into hypervisor command line parameters."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, ClassVar

_META_KEY = "vmsandbox.params"


def bool_to_on_off(value: bool) -> str:
    return "on" if value else "off"


def vec_to_string(values: Sequence[Any]) -> str:
    return ",".join(str(v) for v in values)


@dataclass(frozen=True)
class _FieldOptions:
    key: str | None = None
    ignore: bool = False
    generator: Callable[[Any], str] | None = None
    predicate: Callable[[Any], bool] | None = None


_DEFAULT_OPTIONS = _FieldOptions()


def param_field(
    *,
    default=MISSING,
    default_factory=MISSING,
    key: str | None = None,
    ignore: bool = False,
    generator: Callable[[Any], str] | None = None,
    predicate: Callable[[Any], bool] | None = None,
):
    """Declare a dataclass field with rendering options.

    ``key`` overrides the rendered name, ``ignore`` leaves the field out,
    ``generator`` turns the value into text and ``predicate`` receives the
    whole object and decides whether the field is rendered.
    """
    options = _FieldOptions(key, ignore, generator, predicate)
    return field(
        default=default,
        default_factory=default_factory,
        metadata={_META_KEY: options},
    )


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, PropertySet):
        return value.to_property_string()
    if isinstance(value, (list, tuple)):
        return vec_to_string(value)
    return str(value)


def _entries(obj: Any) -> Iterator[tuple[str, str]]:
    for f in fields(obj):
        options = f.metadata.get(_META_KEY, _DEFAULT_OPTIONS)
        if options.ignore:
            continue
        value = getattr(obj, f.name)
        if value is None:
            continue
        if isinstance(value, (list, tuple)) and not value:
            continue
        if options.predicate is not None and not options.predicate(obj):
            continue
        text = options.generator(value) if options.generator else _format(value)
        yield options.key or f.name.replace("_", "-"), text


class PropertySet:
    """Dataclass mixin rendering fields as ``key=value,key=value``.

    The parameter name defaults to the lower-cased class name and may be
    set with the ``params_name`` class keyword.
    """

    _params_name: ClassVar[str]

    def __init_subclass__(cls, params_name: str | None = None, **kwargs):
        super().__init_subclass__(**kwargs)
        cls._params_name = (
            params_name or cls.__dict__.get("_params_name") or cls.__name__.lower()
        )

    def to_property_string(self) -> str:
        return ",".join(f"{k}={v}" for k, v in _entries(self))

    def to_cmdline_params(self, prefix: str) -> list[str]:
        return [f"{prefix}{self._params_name}", self.to_property_string()]


class ParamSet:
    """Dataclass mixin rendering each field as its own option and value."""

    def to_cmdline_params(self, prefix: str) -> list[str]:
        params: list[str] = []
        for key, value in _entries(self):
            params.extend((f"{prefix}{key}", value))
        return params