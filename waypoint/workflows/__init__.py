"""Reference workflows. Importing this package registers them."""

from . import campaigns, contracts, procurement, renewal

__all__ = ["campaigns", "contracts", "procurement", "renewal"]
