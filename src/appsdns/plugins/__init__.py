"""appsdns plugin namespace package.

Brief:
    Groups built-in appsdns plugins under the ``appsdns.plugins`` namespace.

Inputs:
    - None.

Outputs:
    - Makes ``appsdns.plugins.resolve`` importable for tests and runtime code.
"""
