"""
Storage helpers shared by the graph, inbox and request stores.
"""

from .sqlite import TenantDatabase, is_transient

__all__ = ["TenantDatabase", "is_transient"]
