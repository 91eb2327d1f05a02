"""Routers package."""

from . import (
    health,
    photos,
    billing,
)
