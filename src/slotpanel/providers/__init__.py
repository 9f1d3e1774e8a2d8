"""Feature providers layered on the operation supervisor."""
from __future__ import annotations

from .backups import BackupsProvider
from .environment import EnvironmentProvider
from .slots import SlotsProvider
from .updates import UpdatesProvider, validate_image_path

__all__ = [
    "BackupsProvider",
    "EnvironmentProvider",
    "SlotsProvider",
    "UpdatesProvider",
    "validate_image_path",
]
