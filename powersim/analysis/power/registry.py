"""
Evaluator lookup.

Worker processes cannot receive arbitrary callables, so every evaluator
dispatched to a pool is reduced to a reference string that each worker
resolves again on its own: an import path ("package.module:function").
Short registered names ("ttest") are expanded to their import path before
dispatch.
"""

import importlib
import logging
from functools import lru_cache
from typing import Callable, Dict, Union

from powersim.errors import ConfigurationError

logger = logging.getLogger(__name__)

EvaluatorRef = Union[str, Callable]

BUILTIN_MODULE = "powersim.analysis.power.evaluators"

_REGISTRY: Dict[str, str] = {}


def register_evaluator(name: str, target: EvaluatorRef = None):
    """
    Register an evaluator under a short name.

    Usable directly, ``register_evaluator("ttest", simulate_ttest)``, or as a
    decorator, ``@register_evaluator("ttest")``. The evaluator must be a
    module-level function (or an import path string) so workers can import it.
    """
    def _register(func):
        ref = func if isinstance(func, str) else _qualified_name(func)
        _REGISTRY[name] = ref
        logger.debug("Registered evaluator %s -> %s", name, ref)
        return func

    if target is None:
        return _register
    return _register(target)


def registered_evaluators() -> Dict[str, str]:
    importlib.import_module(BUILTIN_MODULE)
    return dict(_REGISTRY)


def _qualified_name(func: Callable) -> str:
    module = getattr(func, "__module__", None)
    qualname = getattr(func, "__qualname__", None)
    if module is None or qualname is None:
        raise ConfigurationError(
            f"Evaluator {func!r} has no module-level name; "
            "parallel runs need a function importable by the workers"
        )
    if "<lambda>" in qualname or "<locals>" in qualname:
        raise ConfigurationError(
            f"Evaluator {module}.{qualname} is a lambda or nested function; "
            "parallel runs need a module-level function"
        )
    return f"{module}:{qualname}"


def reference_for(func: Callable) -> str:
    """Return the import reference of ``func``, or raise if workers could not resolve it."""
    ref = _qualified_name(func)
    try:
        resolved = _import_reference(ref)
    except ConfigurationError:
        raise ConfigurationError(f"Evaluator {ref} cannot be imported by reference") from None
    if resolved is not func:
        raise ConfigurationError(
            f"Evaluator {ref} does not resolve back to the same object; "
            "parallel runs need a stable module-level function"
        )
    return ref


@lru_cache(maxsize=None)
def _import_reference(ref: str) -> Callable:
    module_name, _, attr_path = ref.partition(":")
    if not module_name or not attr_path:
        raise ConfigurationError(f"Invalid evaluator reference {ref!r}, expected 'module:function'")
    try:
        target = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import evaluator module {module_name!r}: {exc}") from exc
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError:
            raise ConfigurationError(f"Module {module_name!r} has no evaluator {attr_path!r}") from None
    if not callable(target):
        raise ConfigurationError(f"Evaluator reference {ref!r} is not callable")
    return target


def _lookup_name(name: str) -> str:
    if name not in _REGISTRY:
        importlib.import_module(BUILTIN_MODULE)
    if name not in _REGISTRY:
        raise ConfigurationError(f"Unknown evaluator {name!r}; registered: {sorted(_REGISTRY)}")
    return _REGISTRY[name]


def to_reference(evaluator: EvaluatorRef) -> str:
    """Reduce an evaluator to an import path workers can resolve."""
    if isinstance(evaluator, str):
        ref = evaluator if ":" in evaluator else _lookup_name(evaluator)
        _import_reference(ref)
        return ref
    if not callable(evaluator):
        raise ConfigurationError(f"Evaluator {evaluator!r} is not callable")
    return reference_for(evaluator)


def resolve_evaluator(evaluator: EvaluatorRef) -> Callable:
    if isinstance(evaluator, str):
        ref = evaluator if ":" in evaluator else _lookup_name(evaluator)
        return _import_reference(ref)
    if not callable(evaluator):
        raise ConfigurationError(f"Evaluator {evaluator!r} is neither callable nor a reference")
    return evaluator
