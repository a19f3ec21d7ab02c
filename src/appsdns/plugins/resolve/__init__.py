"""Chain plugins for appsdns.

Brief:
  Every module in this package is scanned by
  ``appsdns.plugins.resolve.registry.discover_plugins`` and its BasePlugin
  subclasses become available to the ``plugins`` config list by alias.

Built-in plugins:
  - service_discovery (aliases: svcdiscovery, sdc): answers A/AAAA for
    registered application hostnames.
  - forward (aliases: upstream, proxy): relays queries to upstream resolvers.
"""
