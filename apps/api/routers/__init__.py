"""Routers package."""

from . import (
    health,
    tokens,
    admin_tokens,
    billing,
)
