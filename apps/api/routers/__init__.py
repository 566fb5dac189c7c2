"""Routers package."""

from . import (
    health,
    auth,
    targets,
    accounts,
    billing,
    payments,
    admin,
)
