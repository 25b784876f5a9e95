# ledger/api/__init__.py
import importlib
import logging
import pkgutil

from fastapi import APIRouter

log = logging.getLogger("ledger.api")

router = APIRouter()


def auto_register_routes():
    """
    Discover and mount every *_routes.py module inside ledger/api
    """
    log.info("Auto-discovering API routes...")

    for _, module_name, _ in sorted(pkgutil.iter_modules(__path__)):
        if not module_name.endswith("_routes"):
            continue

        module = importlib.import_module(f"{__name__}.{module_name}")
        if hasattr(module, "router"):
            router.include_router(module.router)
            log.info("Loaded API router: %s", module_name)
        else:
            log.warning("%s has no router", module_name)
