"""Resolve a handler spec to the callable each worker runs.

A spec is ``"<target>:<attribute>"`` where target is either a dotted
module path (``myapp.handlers``) or a ``.py`` file path. The attribute
defaults to ``handle`` when omitted.
"""

from __future__ import annotations

import importlib
import importlib.util
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from poolforge._internal.errors import HandlerError

if TYPE_CHECKING:
    from types import ModuleType

    from poolforge._internal.types import Handler

DEFAULT_ATTRIBUTE = "handle"


def parse_spec(spec: str) -> tuple[str, str]:
    """Split a handler spec into (target, attribute).

    Raises:
        HandlerError: If the spec is empty.
    """
    spec = spec.strip()
    if not spec:
        msg = "Handler spec is empty; expected 'module:function' or 'file.py:function'"
        raise HandlerError(msg)
    # rpartition keeps Windows drive letters ("C:\\x.py") in the target.
    target, sep, attribute = spec.rpartition(":")
    if not sep or not attribute or "/" in attribute or "\\" in attribute:
        return spec, DEFAULT_ATTRIBUTE
    return target, attribute


def _load_file(path: Path) -> ModuleType:
    if not path.exists():
        msg = f"Handler file not found: {path}"
        raise HandlerError(msg)

    module_name = f"poolforge_handler_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        msg = f"Could not create module spec for: {path}"
        raise HandlerError(msg)

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        msg = f"Failed to import handler file {path}: {exc}"
        raise HandlerError(msg) from exc
    return module


def _load_module(name: str) -> ModuleType:
    try:
        return importlib.import_module(name)
    except Exception as exc:
        msg = f"Failed to import handler module {name!r}: {exc}"
        raise HandlerError(msg) from exc


def load_handler(spec: str) -> Handler:
    """Import a handler from its spec.

    Args:
        spec: ``"pkg.module:func"``, ``"path/to/file.py:func"``, or either
            target alone to use the ``handle`` attribute.

    Returns:
        The handler callable (sync or async).

    Raises:
        HandlerError: If the target cannot be imported, or the attribute
            is missing or not callable.
    """
    target, attribute = parse_spec(spec)
    if target.endswith(".py"):
        module = _load_file(Path(target))
    else:
        module = _load_module(target)

    handler = getattr(module, attribute, None)
    if handler is None:
        msg = f"Handler {attribute!r} not found in {target}"
        raise HandlerError(msg)
    if not callable(handler):
        msg = f"Handler {attribute!r} in {target} is not callable"
        raise HandlerError(msg)
    return handler  # type: ignore[no-any-return]
