"""JSON Schema-based validation for appsdns YAML configuration.

This module validates the root of ``config.yaml`` (server, logging and plugin
entries) and expands ``vars`` references before validation. Per-plugin
``config`` blocks are validated later by each plugin's pydantic model.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError

logger = logging.getLogger(__name__)

_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")
_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")

_LOGGING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "level": {
            "type": "string",
            "enum": ["debug", "info", "warn", "warning", "error", "crit", "critical"],
        },
        "stderr": {"type": "boolean"},
        "file": {"type": ["string", "null"]},
        "syslog": {
            "oneOf": [
                {"type": "boolean"},
                {
                    "type": "object",
                    "properties": {
                        "address": {
                            "oneOf": [
                                {"type": "string"},
                                {
                                    "type": "array",
                                    "prefixItems": [
                                        {"type": "string"},
                                        {"type": "integer"},
                                    ],
                                    "minItems": 2,
                                    "maxItems": 2,
                                },
                            ]
                        },
                        "facility": {"type": "string"},
                        "tag": {"type": "string"},
                    },
                    "additionalProperties": False,
                },
            ]
        },
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "appsdns configuration",
    "type": "object",
    "properties": {
        "logging": _LOGGING_SCHEMA,
        "server": {
            "type": "object",
            "properties": {
                "host": {"type": "string", "minLength": 1},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "udp": {"type": "boolean"},
                "tcp": {"type": "boolean"},
                "query_timeout_ms": {"type": "integer", "minimum": 1},
                "tcp_idle_timeout": {"type": "number", "exclusiveMinimum": 0},
            },
            "additionalProperties": False,
        },
        "plugins": {
            "type": "array",
            "minItems": 1,
            "items": {
                "oneOf": [
                    {"type": "string", "minLength": 1},
                    {
                        "type": "object",
                        "properties": {
                            "module": {"type": "string", "minLength": 1},
                            "name": {"type": "string", "minLength": 1},
                            "enabled": {"type": "boolean"},
                            "comment": {"type": "string"},
                            "priority": {"type": ["integer", "string"]},
                            "setup_priority": {"type": ["integer", "string"]},
                            "logging": _LOGGING_SCHEMA,
                            "config": {"type": "object"},
                        },
                        "required": ["module"],
                        "additionalProperties": False,
                    },
                ]
            },
        },
    },
    "required": ["plugins"],
    "additionalProperties": False,
}


def _normalize_variables_for_validation(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level `vars` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - Replaces `${KEY}` occurrences inside strings.
      - A string that is exactly `${KEY}` is replaced by the variable's YAML
        value (list/dict/int/etc.), not its text.
      - References to unknown variables are left untouched.
      - The `vars` group is removed after expansion.
      - Cycles between variables raise ValueError.
    """

    variables = cfg.get("vars")
    if variables is None:
        return
    if not isinstance(variables, dict):
        raise ValueError("config.vars must be a mapping when present")

    for k in variables.keys():
        if not isinstance(k, str) or not _VAR_KEY.fullmatch(k):
            raise ValueError(
                f"config.vars key {k!r} must be ALL_UPPERCASE and match "
                "[A-Z_][A-Z0-9_]*"
            )

    resolved: Dict[str, Any] = {}

    def _resolve_var(key: str, stack: List[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            cycle = " -> ".join(stack + [key])
            raise ValueError(f"config.vars contains a cycle: {cycle}")
        if key not in variables:
            raise KeyError(key)

        stack.append(key)
        value = _expand_obj(variables[key], stack)
        stack.pop()

        resolved[key] = value
        return value

    def _expand_string(text: str, stack: List[str]) -> Any:
        whole = _VAR_PATTERN.fullmatch(text)
        if whole and whole.group(1) in variables:
            return copy.deepcopy(_resolve_var(whole.group(1), stack))

        def _repl(match: re.Match) -> str:
            try:
                v = _resolve_var(match.group(1), stack)
            except KeyError:
                return match.group(0)
            if isinstance(v, bool):
                return "true" if v else "false"
            if v is None:
                return "null"
            if isinstance(v, (int, float, str)):
                return str(v)
            return json.dumps(v)

        return _VAR_PATTERN.sub(_repl, text)

    def _expand_obj(obj: Any, stack: List[str]) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj, stack)
        if isinstance(obj, list):
            return [_expand_obj(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand_obj(v, stack) for k, v in obj.items()}
        return obj

    # Resolve every variable first so cycles surface even when unused.
    for k in list(variables.keys()):
        _resolve_var(k, [])

    for top_key in list(cfg.keys()):
        if top_key == "vars":
            continue
        cfg[top_key] = _expand_obj(cfg[top_key], [])

    cfg.pop("vars", None)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path to the YAML config being validated.

    Outputs:
      - String suitable for display in logs or CLI output.
    """

    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def validate_config(
    cfg: Dict[str, Any],
    *,
    config_path: Optional[str] = None,
    schema: Optional[Dict[str, Any]] = None,
) -> None:
    """Brief: Expand variables in, then validate, a parsed YAML configuration.

    Inputs:
      - cfg: Dict loaded from YAML (mutated: `vars` expanded and removed).
      - config_path: Optional path to the YAML file, used in error messages.
      - schema: Optional schema override; defaults to CONFIG_SCHEMA.

    Outputs:
      - None on success.

    Raises:
      - ValueError: listing every validation error with its instance path.

    Example:
      >>> validate_config({"plugins": [{"module": "forward"}]})
    """

    _normalize_variables_for_validation(cfg)

    validator = Draft202012Validator(schema or CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path])
    if errors:
        raise ValueError(_format_errors(errors, config_path=config_path))
