"""Domain layer - store options, info records and settings."""
from domain.models import Bounds, StoreInfo, StoreOptions, StoreSettings

__all__ = [
    'Bounds',
    'StoreInfo',
    'StoreOptions',
    'StoreSettings',
]
