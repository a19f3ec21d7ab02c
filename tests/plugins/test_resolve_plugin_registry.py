"""
Brief: Tests for appsdns.plugins.resolve.registry alias discovery.

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from appsdns.plugins.resolve import registry
from appsdns.plugins.resolve.base import BasePlugin
from appsdns.plugins.resolve.forward import Forward
from appsdns.plugins.resolve.service_discovery import ServiceDiscovery


def test_discover_plugins_registers_aliases_and_defaults():
    """
    Brief: Built-in plugins are reachable by their aliases and snake_case names.

    Inputs:
      - None

    Outputs:
      - None: Asserts registry entries
    """
    reg = registry.discover_plugins()

    for alias in ("service_discovery", "svcdiscovery", "sdc"):
        assert reg[alias] is ServiceDiscovery
    for alias in ("forward", "upstream", "proxy"):
        assert reg[alias] is Forward
    assert BasePlugin not in reg.values()


def test_get_plugin_class_normalizes_alias():
    """
    Brief: Aliases are case- and dash-insensitive.

    Inputs:
      - "Service-Discovery"

    Outputs:
      - None: Asserts resolved class
    """
    assert registry.get_plugin_class("Service-Discovery") is ServiceDiscovery


def test_get_plugin_class_dotted_path():
    """
    Brief: A dotted path is imported directly.

    Inputs:
      - dotted class path

    Outputs:
      - None: Asserts resolved class
    """
    cls = registry.get_plugin_class("appsdns.plugins.resolve.forward.Forward")
    assert cls is Forward


def test_get_plugin_class_rejects_non_plugin_path():
    """
    Brief: A dotted path to something that is not a BasePlugin subclass raises TypeError.

    Inputs:
      - path to a function

    Outputs:
      - None: Asserts TypeError
    """
    with pytest.raises(TypeError):
        registry.get_plugin_class(
            "appsdns.plugins.resolve.service_discovery.is_eligible"
        )


def test_unknown_alias_lists_suggestions():
    """
    Brief: Unknown aliases raise KeyError mentioning close matches.

    Inputs:
      - misspelled alias

    Outputs:
      - None: Asserts KeyError text
    """
    with pytest.raises(KeyError) as excinfo:
        registry.get_plugin_class("forwrd")
    assert "forward" in str(excinfo.value)


def test_duplicate_alias_raises(monkeypatch):
    """
    Brief: Two classes claiming the same alias is a ValueError.

    Inputs:
      - monkeypatch: makes Forward claim "sdc"

    Outputs:
      - None: Asserts ValueError
    """
    monkeypatch.setattr(Forward, "aliases", ("forward", "sdc"))

    with pytest.raises(ValueError):
        registry.discover_plugins()


@pytest.mark.parametrize(
    "class_name,alias",
    [
        ("ServiceDiscovery", "service_discovery"),
        ("ExamplePlugin", "example"),
        ("Test123Example", "test123_example"),
        ("HTTPForwarder", "http_forwarder"),
        ("already_snake", "already_snake"),
    ],
)
def test_alias_from_class_name(class_name, alias):
    """
    Brief: Class names become snake_case aliases without a "Plugin" suffix.

    Inputs:
      - class_name: plugin class name

    Outputs:
      - None: Asserts derived alias
    """
    assert registry.alias_from_class_name(class_name) == alias


def test_normalize_alias_folds_case_and_dashes():
    """
    Brief: Aliases compare case-insensitively with '-' equal to '_'.

    Inputs:
      - "  Multi-Word-Name "

    Outputs:
      - None: Asserts normalized text
    """
    assert registry.normalize_alias("  Multi-Word-Name ") == "multi_word_name"
