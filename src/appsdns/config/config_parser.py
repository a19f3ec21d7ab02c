"""From a YAML file on disk to a linked, ready-to-setup plugin chain.

Startup runs, in order: parse_config_file() (YAML, variables, schema),
load_plugins() (resolve, validate and link the `plugins` list), run_setup(),
and on exit close_plugins().
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Type

import yaml
from pydantic import ValidationError

from .config_schema import validate_config
from ..plugins.resolve.base import BasePlugin
from ..plugins.resolve.registry import discover_plugins, get_plugin_class

logger = logging.getLogger(__name__)

_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")

# Keys of a plugin entry that belong to BasePlugin rather than to the plugin's
# own config model.
_BASE_KEYS = ("enabled", "comment", "priority", "setup_priority", "logging")


def _is_var_key(key: str) -> bool:
    """Brief: True when *key* is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*."""

    return bool(key) and bool(_VAR_KEY.fullmatch(key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Inputs:
      - text: String containing YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to original string on parse errors).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['vars'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['vars'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Notes:
      - Only environment keys matching [A-Z_][A-Z0-9_]* are considered.
      - Values are parsed as YAML so list/dict/int/bool values can be provided.

    Example:
      >>> cfg = {'vars': {'TTL': 100}}
      >>> parse_config_variables(cfg, cli_vars=['TTL=300'], environ={})['TTL']
      300
    """

    base = cfg.get("vars")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.vars must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if isinstance(k, str) and _is_var_key(k):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match "
                "[A-Z_][A-Z0-9_]*)" % k
            )
        merged[k] = _parse_yaml_value(raw)

    cfg["vars"] = merged
    return merged


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, variable-merge, and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - cli_vars: Optional list of CLI `KEY=YAML` assignments (from -v/--var).
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: Parsed configuration mapping with variables expanded.

    Raises:
      - OSError: When the file cannot be read.
      - ValueError: When YAML parsing, variable merging or schema validation
        fails.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    validate_config(cfg, config_path=config_path)
    return cfg


def _validate_plugin_config(
    plugin_cls: Type[BasePlugin], config: Optional[dict]
) -> dict:
    """Brief: Validate and normalize plugin configuration via its pydantic model.

    Inputs:
      - plugin_cls: Plugin class (subclass of BasePlugin).
      - config: Raw config mapping for this plugin (may be None).

    Outputs:
      - dict: Validated/normalized config mapping to be passed into plugin_cls.

    Raises:
      - ValueError: When the plugin's config model rejects *config*.

    Notes:
      - The optional "logging" sub-config is a BasePlugin-level option and is
        preserved verbatim across validation.
    """

    cfg: dict = dict(config or {})
    logging_cfg = cfg.pop("logging", None)

    get_model = getattr(plugin_cls, "get_config_model", None)
    model_cls = get_model() if callable(get_model) else None
    if model_cls is None:
        validated = cfg
    else:
        try:
            model_instance = model_cls(**cfg)
        except ValidationError as exc:
            raise ValueError(
                f"Invalid configuration for plugin {plugin_cls.__name__}: {exc}"
            ) from exc
        dump = getattr(model_instance, "model_dump", None) or model_instance.dict
        validated = dict(dump())

    if logging_cfg is not None:
        validated["logging"] = logging_cfg
    return validated


def load_plugins(plugin_specs: List[Any]) -> List[BasePlugin]:
    """Brief: Instantiate plugins from config entries and link them into a chain.

    Inputs:
      - plugin_specs: List of plugin specs. Each item is either:
        - str: a dotted class path or short alias, or
        - dict: plugin entry mapping supporting:
          - module: dotted class path or alias
          - name: optional unique plugin label (defaults to module)
          - config: plugin-specific configuration mapping
          - enabled: bool (default True). When false, the plugin is skipped.
          - comment: optional human-only string (ignored)
          - priority / setup_priority: BasePlugin ordering options
          - logging: per-plugin logging block

    Outputs:
      - list[BasePlugin]: Initialized plugins in chain order (ascending
        priority, config order among equals). Each plugin's ``next`` is the
        following element; the last plugin has no next. The chain head is
        element 0.

    Raises:
      - ValueError: duplicate plugin names, invalid entries or invalid config.
      - KeyError: unknown plugin alias.
      - ImportError / TypeError: bad dotted path.
    """

    alias_registry = discover_plugins()
    entries: List[Dict[str, Any]] = []
    seen_names: set = set()

    for spec in plugin_specs or []:
        if isinstance(spec, str):
            spec = {"module": spec}
        if not isinstance(spec, dict):
            raise ValueError(f"plugins[]: unsupported entry {spec!r}")

        module_path = str(spec.get("module") or "").strip()
        if not module_path:
            raise ValueError("plugins[]: each entry must have a non-empty module")

        cfg_obj = spec.get("config") or {}
        if not isinstance(cfg_obj, dict):
            raise ValueError(f"plugins[{module_path}].config must be a mapping")
        raw_config = dict(cfg_obj)

        # Entry-level base options win over the same keys inside config.
        base_opts: Dict[str, Any] = {}
        for key in _BASE_KEYS:
            if key in raw_config:
                base_opts[key] = raw_config.pop(key)
            if spec.get(key) is not None:
                base_opts[key] = spec[key]

        if not bool(base_opts.get("enabled", True)):
            logger.info("plugin %s disabled; skipping", module_path)
            continue

        name = str(spec.get("name") or module_path).strip()
        if name in seen_names:
            raise ValueError(
                "Duplicate plugin name '%s'. Each plugin must have a unique name; "
                "set 'name' explicitly in plugins[] to disambiguate." % name
            )
        seen_names.add(name)

        plugin_cls = get_plugin_class(module_path, alias_registry)
        if "logging" in base_opts:
            raw_config["logging"] = base_opts["logging"]
        validated = _validate_plugin_config(plugin_cls, raw_config)
        for key in ("priority", "setup_priority"):
            if key in base_opts:
                validated[key] = base_opts[key]

        entries.append(
            {
                "cls": plugin_cls,
                "name": name,
                "config": validated,
                "priority": BasePlugin._parse_priority_value(
                    validated.get("priority", plugin_cls.priority), "priority", logger
                ),
            }
        )

    # sorted() is stable, so equal priorities keep their config order.
    ordered = sorted(entries, key=lambda e: e["priority"])

    # Build back to front so every plugin receives its successor at
    # construction time.
    chain: List[BasePlugin] = []
    next_plugin: Optional[BasePlugin] = None
    for entry in reversed(ordered):
        next_plugin = entry["cls"](
            name=entry["name"], next_plugin=next_plugin, **entry["config"]
        )
        chain.append(next_plugin)
    chain.reverse()

    logger.info(
        "plugin chain: %s", " -> ".join(p.name for p in chain) or "<empty>"
    )
    return chain


def run_setup(plugins: List[BasePlugin]) -> None:
    """Brief: Run setup() on every plugin ordered by setup_priority.

    Inputs:
      - plugins: Plugins as returned by load_plugins().

    Outputs:
      - None. The first exception raised by a plugin's setup() propagates and
        aborts startup.
    """

    for plugin in sorted(plugins, key=lambda p: p.setup_priority):
        logger.debug("running setup for %s", plugin.name)
        plugin.setup()


def close_plugins(plugins: List[BasePlugin]) -> None:
    """Brief: Call close() on every plugin, logging (not raising) failures."""

    for plugin in plugins:
        try:
            plugin.close()
        except Exception:
            logger.exception("error while closing plugin %s", plugin.name)
