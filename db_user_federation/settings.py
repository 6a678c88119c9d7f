"""
Where instance settings come from.

Two sources, both read after ``.env`` has been loaded with python-dotenv:

* a JSON catalog ``{"defaults": {...}, "instances": [{"id": "...", ...}]}``
  whose path is taken from ``DB_USER_FEDERATION_CATALOG``; per-instance keys
  override the defaults;
* ``DB_USER_FEDERATION_<KEY>`` environment variables describing a single
  instance (``DB_USER_FEDERATION_URL``, ``DB_USER_FEDERATION_FIND_BY_ID`` ...).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from db_user_federation import error_codes
from db_user_federation.errors import ConfigurationError
from db_user_federation.provider import ProviderRegistry

LOG = logging.getLogger(__name__)

ENV_PREFIX = "DB_USER_FEDERATION_"
CATALOG_ENV = ENV_PREFIX + "CATALOG"
INSTANCE_ID_ENV = ENV_PREFIX + "INSTANCE_ID"
DEFAULT_INSTANCE_ID = "default"

# variables that steer loading itself rather than describe an instance
_LOADER_KEYS = {"catalog", "instance_id"}


def _bad(message: str, **details: Any) -> ConfigurationError:
    return ConfigurationError(message, subcode=error_codes.CONFIG_BAD_VALUE, details=details)


# ------------------------ Catalog ------------------------

def load_catalog(path: "str | Path | None" = None) -> Dict[str, Dict[str, Any]]:
    """Read the JSON catalog and return ``instance id -> merged settings``."""
    load_dotenv()
    if path is None:
        path = os.getenv(CATALOG_ENV, "").strip()
        if not path:
            raise _bad(f"No catalog path given and {CATALOG_ENV} is not set")
    path = Path(path)
    if not path.exists():
        raise _bad(f"Catalog file not found: {path}", path=str(path))
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise _bad(f"Catalog file {path} is empty", path=str(path))
    try:
        catalog = json.loads(raw)
    except json.JSONDecodeError as e:
        raise _bad(f"Invalid JSON in catalog file {path}: {e}", path=str(path)) from e
    if not isinstance(catalog, dict):
        raise _bad(f"Catalog file {path} must hold a JSON object", path=str(path))

    defaults = catalog.get("defaults") or {}
    instances: Dict[str, Dict[str, Any]] = {}
    for i, entry in enumerate(catalog.get("instances") or []):
        instance_id = str(entry.get("id") or "").strip()
        if not instance_id:
            raise _bad(f"Catalog instance #{i} has no 'id'", path=str(path), index=i)
        if instance_id in instances:
            raise _bad(f"Duplicate instance id {instance_id!r} in catalog", path=str(path))
        merged = {**defaults, **entry}
        merged.pop("id", None)
        instances[instance_id] = merged
    LOG.info("Loaded %d instance(s) from catalog %s", len(instances), path)
    return instances


# ------------------------ Environment ------------------------

def settings_from_env(prefix: str = ENV_PREFIX, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Collect ``<prefix><KEY>`` variables as lower-case snake keys."""
    if environ is None:
        load_dotenv()
        environ = os.environ
    settings: Dict[str, str] = {}
    for name, value in environ.items():
        if not name.startswith(prefix):
            continue
        key = name[len(prefix):].lower()
        if key and key not in _LOADER_KEYS:
            settings[key] = value
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Settings keys from environment: %s", sorted(k for k in settings if k != "password"))
    return settings


def load_instances(path: "str | Path | None" = None) -> Dict[str, Dict[str, Any]]:
    """Catalog when one is configured, otherwise the single environment-defined instance."""
    load_dotenv()
    if path is not None or os.getenv(CATALOG_ENV, "").strip():
        return load_catalog(path)
    settings = settings_from_env()
    if not settings:
        raise ConfigurationError(
            f"No catalog and no {ENV_PREFIX}* variables found",
            subcode=error_codes.CONFIG_NOT_CONFIGURED,
        )
    instance_id = os.getenv(INSTANCE_ID_ENV, DEFAULT_INSTANCE_ID).strip() or DEFAULT_INSTANCE_ID
    return {instance_id: settings}


def configure_registry(
    registry: ProviderRegistry,
    instances: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> ProviderRegistry:
    if instances is None:
        instances = load_instances()
    for instance_id, settings in instances.items():
        registry.get_or_configure(instance_id, settings)
    return registry
