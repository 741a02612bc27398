# api/__init__.py
from api.container import (
    Services,
    assemble,
    build_services,
    seed_demo_products,
)

__all__ = [
    "Services",
    "assemble",
    "build_services",
    "seed_demo_products",
]
