"""Dynamic cache and informers.

Exposes:
    DynamicCache         -- label-admitted, reference-counted watch/read cache.
    Informer             -- list+watch loop over one kind.
    CacheAdmissionError  -- read of a kind nobody registered.
"""

from kubephase.cache.dynamic_cache import CacheAdmissionError, DynamicCache, OwnerRef
from kubephase.cache.informer import Informer

__all__ = ["CacheAdmissionError", "DynamicCache", "Informer", "OwnerRef"]
