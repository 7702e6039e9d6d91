"""Constants used in the project."""

import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    DEFAULT_REGISTRY_HOST = "registry.opentofu.org"
    DISCOVERY_PATH = "/.well-known/terraform.json"
    PROVIDERS_SERVICE_ID = "providers.v1"
    EXECUTABLE_PREFIXES = ("terraform-provider-", "tofu-provider-")
    PACKED_PREFIX = "terraform-provider-"
    PACKED_SUFFIX = ".zip"
    OCI_INDEX_MEDIA_TYPES = (
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
    )
    OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
    OCI_ARCHIVE_MEDIA_TYPE = "archive/zip"

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_CACHE_TTL_SEC = 300
    DOWNLOAD_CHUNK_BYTES = 64 * 1024

    MAX_WORKERS = 8
    NEAREST_MISS_LIMIT = 5
    STAGING_PREFIX = ".staging-"

    ENV_LOG_LEVEL = "PROVGATE_LOG_LEVEL"
    ENV_LOG_FORMAT = "PROVGATE_LOG_FORMAT"
    ENV_CONFIG = "PROVGATE_CONFIG"
    ENV_PLUGIN_CACHE_DIR = "PROVGATE_PLUGIN_CACHE_DIR"
    DEFAULT_CONFIG_PATHS = (
        "./provgate.yml",
        "./provgate.yaml",
        "~/.config/provgate/provgate.yml",
        "~/.config/provgate/provgate.yaml",
        "~/.provgate.yml",
    )


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load a configuration document from ``path`` or the default locations.

    JSON is used for ``.json`` files and YAML for everything else. Returns an
    empty dict when no default file exists; an explicit ``path`` that does not
    exist raises FileNotFoundError, and parse errors propagate to the caller.
    """
    if path and not os.path.isfile(path):
        raise FileNotFoundError(path)
    candidates = [path] if path else [os.path.expanduser(p) for p in Constants.DEFAULT_CONFIG_PATHS]
    for candidate in candidates:
        if not candidate or not os.path.isfile(candidate):
            continue
        logger.debug("Loading configuration from %s", candidate)
        with open(candidate, "r", encoding="utf-8") as fh:
            if candidate.lower().endswith(".json"):
                data = json.load(fh)
            else:
                import yaml  # pylint: disable=import-outside-toplevel

                data = yaml.safe_load(fh)
        return data or {}
    return {}
