"""Lookup table of job kinds by name."""

from __future__ import annotations

from bulkops.core.exceptions import UnknownJobKindError
from bulkops.jobs.base import JobKind

_KINDS: dict[str, JobKind] = {}


def register_kind(kind: JobKind) -> JobKind:
    _KINDS[kind.name] = kind
    return kind


def unregister_kind(name: str) -> None:
    _KINDS.pop(name, None)


def get_kind(name: str) -> JobKind:
    _load_builtin_kinds()
    try:
        return _KINDS[name]
    except KeyError:
        raise UnknownJobKindError(
            f"Unknown job kind '{name}' (available: {', '.join(available_kinds())})"
        ) from None


def available_kinds() -> list[str]:
    _load_builtin_kinds()
    return sorted(_KINDS)


def _load_builtin_kinds() -> None:
    # Imported here so the kind modules can import the registry.
    from bulkops.jobs import name_normalization, product_import  # noqa: F401
