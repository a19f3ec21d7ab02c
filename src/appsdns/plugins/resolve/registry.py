"""Alias lookup for chain plugins.

Brief:
  Config entries name a plugin either by dotted class path
  (``appsdns.plugins.resolve.forward.Forward``) or by a short alias
  (``forward``). Aliases come from each class's ``aliases`` attribute plus one
  derived from the class name (``ServiceDiscovery`` -> ``service_discovery``).

Outputs:
  - discover_plugins(): alias -> class mapping for a plugin package.
  - get_plugin_class(): resolve one config identifier.
"""

import difflib
import importlib
import inspect
import logging
import pkgutil
import re
from types import ModuleType
from typing import Dict, Iterator, Optional, Tuple, Type

from .base import BasePlugin

logger = logging.getLogger(__name__)

PLUGIN_PACKAGE = "appsdns.plugins.resolve"

# Insert "_" before an uppercase letter that starts a new word.
_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")

PluginRegistry = Dict[str, Type[BasePlugin]]


def normalize_alias(alias: str) -> str:
    """Case-fold an alias and treat '-' and '_' alike ("Service-Discovery" == "service_discovery")."""
    return alias.strip().lower().replace("-", "_")


def alias_from_class_name(name: str) -> str:
    """snake_case alias for a class name, without a trailing "Plugin"."""
    if name.endswith("Plugin") and name != "Plugin":
        name = name[: -len("Plugin")]
    return _WORD_BOUNDARY.sub("_", name).lower()


def _aliases_of(cls: Type[BasePlugin]) -> Tuple[str, ...]:
    names = [normalize_alias(a) for a in cls.get_aliases()]
    names.append(alias_from_class_name(cls.__name__))
    return tuple(dict.fromkeys(names))


def _plugin_classes(module: ModuleType) -> Iterator[Type[BasePlugin]]:
    for _, obj in inspect.getmembers(module, inspect.isclass):
        # Imported classes are registered by the module that defines them.
        if obj.__module__ != module.__name__:
            continue
        if issubclass(obj, BasePlugin) and obj is not BasePlugin:
            yield obj


def discover_plugins(package_name: str = PLUGIN_PACKAGE) -> PluginRegistry:
    """
    Brief: Import every module of *package_name* and index its plugin classes.

    Inputs:
      - package_name: Package whose modules define plugins.

    Outputs:
      - dict: normalized alias -> plugin class.

    Raises:
      - ImportError: a plugin module failed to import.
      - ValueError: two classes claim the same alias.

    Example:
        >>> discover_plugins()["sdc"].__name__
        'ServiceDiscovery'
    """
    package = importlib.import_module(package_name)
    registry: PluginRegistry = {}

    for info in pkgutil.iter_modules(package.__path__, package.__name__ + "."):
        try:
            module = importlib.import_module(info.name)
        except ImportError:
            logger.error("failed importing plugin module %s", info.name)
            raise

        for cls in _plugin_classes(module):
            for alias in _aliases_of(cls):
                owner = registry.setdefault(alias, cls)
                if owner is not cls:
                    raise ValueError(
                        f"Duplicate plugin alias '{alias}' claimed by "
                        f"{cls.__module__}.{cls.__qualname__} and "
                        f"{owner.__module__}.{owner.__qualname__}"
                    )

    logger.debug("discovered plugin aliases: %s", ", ".join(sorted(registry)))
    return registry


def _import_plugin_path(path: str) -> Type[BasePlugin]:
    module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid plugin path '{path}'")
    cls = getattr(importlib.import_module(module_name), attr)
    if not (inspect.isclass(cls) and issubclass(cls, BasePlugin)):
        raise TypeError(f"{path} is not a BasePlugin subclass")
    return cls


def get_plugin_class(
    identifier: str, registry: Optional[PluginRegistry] = None
) -> Type[BasePlugin]:
    """
    Brief: Resolve a config ``module`` value to a plugin class.

    Inputs:
      - identifier: dotted class path (contains ".") or alias.
      - registry: result of discover_plugins(); discovered on demand if None.

    Outputs:
      - The plugin class.

    Raises:
      - KeyError: unknown alias (message lists close matches).
      - ImportError / AttributeError / TypeError / ValueError: bad dotted path.
    """
    ident = identifier.strip()
    if "." in ident:
        return _import_plugin_path(ident)

    known = registry if registry is not None else discover_plugins()
    key = normalize_alias(ident)
    if key in known:
        return known[key]

    close = difflib.get_close_matches(key, list(known), n=3)
    hint = f" Did you mean: {', '.join(close)}?" if close else ""
    raise KeyError(
        f"Unknown plugin alias '{identifier}'. "
        f"Known aliases: {', '.join(sorted(known))}.{hint}"
    )
