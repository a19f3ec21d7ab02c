"""appsdns package"""

# Re-export the plugins subpackage so dotted paths like 'appsdns.plugins.*'
# work with tooling that traverses attributes instead of using importlib.
from . import plugins as plugins
