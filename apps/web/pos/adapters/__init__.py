"""POS adapters - implementations for each POS provider."""

from apps.web.pos.adapters.base import PLATFORM_REFERENCE_PREFIX, POSAdapter
from apps.web.pos.adapters.clover import CloverAdapter
from apps.web.pos.adapters.square import SquareAdapter
from apps.web.pos.adapters.toast import ToastAdapter

__all__ = [
    "PLATFORM_REFERENCE_PREFIX",
    "CloverAdapter",
    "POSAdapter",
    "SquareAdapter",
    "ToastAdapter",
]
