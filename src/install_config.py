"""Provider installation configuration.

Reads the ``provider_installation`` document (YAML or JSON) that lists the
installation sources in priority order and turns it into a SourceChain.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from constants import Constants, _load_yaml_config
from registry.base import InstallationSource
from registry.chain import ChainPolicy, SourceChain
from registry.direct import RegistrySource
from registry.local import LocalDirectorySource
from registry.network_mirror import StaticMirrorSource
from registry.oci_mirror import OCIMirrorSource
from registry.template import TemplateSyntaxError

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """The installation configuration cannot be used."""


@dataclass
class InstallationConfig:
    """Parsed installation settings."""
    sources: List[InstallationSource] = field(default_factory=list)
    policy: ChainPolicy = ChainPolicy.FIRST_MATCH
    plugin_cache_dir: Optional[str] = None

    def build_chain(self) -> SourceChain:
        return SourceChain(self.sources, self.policy)


def _str_list(method: Mapping[str, Any], key: str, where: str) -> Optional[List[str]]:
    value = method.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}: '{key}' must be a string or list of strings")
    return value


def _required(method: Mapping[str, Any], key: str, where: str) -> str:
    value = method.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}: '{key}' is required")
    return value


def _filesystem_mirror(method: Mapping[str, Any], where: str, **filters: Any) -> InstallationSource:
    path = os.path.expanduser(_required(method, "path", where))
    return LocalDirectorySource(path, include_archives=bool(method.get("include_archives", False)), **filters)


def _network_mirror(method: Mapping[str, Any], where: str, **filters: Any) -> InstallationSource:
    return StaticMirrorSource(_required(method, "url", where), **filters)


def _oci_mirror(method: Mapping[str, Any], where: str, **filters: Any) -> InstallationSource:
    return OCIMirrorSource(_required(method, "repository_template", where), **filters)


def _direct(method: Mapping[str, Any], where: str, **filters: Any) -> InstallationSource:
    services = method.get("services")
    if services is not None and not isinstance(services, dict):
        raise ConfigError(f"{where}: 'services' must be a mapping of hostname to URL")
    return RegistrySource(services=services, **filters)


_METHOD_BUILDERS: Dict[str, Callable[..., InstallationSource]] = {
    "filesystem_mirror": _filesystem_mirror,
    "network_mirror": _network_mirror,
    "oci_mirror": _oci_mirror,
    "direct": _direct,
}


def _build_source(method: Any, position: int) -> InstallationSource:
    where = f"provider_installation.methods[{position}]"
    if not isinstance(method, dict):
        raise ConfigError(f"{where}: must be a mapping")
    kind = method.get("kind")
    builder = _METHOD_BUILDERS.get(kind) if isinstance(kind, str) else None
    if builder is None:
        raise ConfigError(
            f"{where}: unknown kind {kind!r}; expected one of {', '.join(sorted(_METHOD_BUILDERS))}"
        )
    filters = {
        "include": _str_list(method, "include", where),
        "exclude": _str_list(method, "exclude", where),
    }
    try:
        return builder(method, where, **filters)
    except TemplateSyntaxError as exc:
        raise ConfigError(f"{where}: invalid repository template: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"{where}: {exc}") from exc


def parse_installation_config(data: Optional[Mapping[str, Any]]) -> InstallationConfig:
    """Build an InstallationConfig from a loaded document.

    A document without ``provider_installation`` means direct installation
    only.

    Raises:
        ConfigError: on unknown method kinds, missing keys, a bad policy or
            a template that does not compile.
    """
    data = data or {}
    if not isinstance(data, Mapping):
        raise ConfigError("configuration document must be a mapping")
    config = InstallationConfig(plugin_cache_dir=data.get("plugin_cache_dir"))

    section = data.get("provider_installation")
    if section is None:
        config.sources = [RegistrySource()]
        return config
    if not isinstance(section, Mapping):
        raise ConfigError("provider_installation must be a mapping")

    policy = section.get("policy", ChainPolicy.FIRST_MATCH.value)
    try:
        config.policy = ChainPolicy(policy)
    except ValueError as exc:
        raise ConfigError(
            f"provider_installation.policy: unknown policy {policy!r}; expected first_match or union"
        ) from exc

    methods = section.get("methods")
    if methods is None:
        config.sources = [RegistrySource()]
    elif not isinstance(methods, list):
        raise ConfigError("provider_installation.methods must be a list")
    else:
        config.sources = [_build_source(method, i) for i, method in enumerate(methods)]
    return config


def load_installation_config(path: Optional[str] = None) -> InstallationConfig:
    """Load the installation configuration.

    The file is ``path`` if given, else the one named by ``PROVGATE_CONFIG``,
    else the first of the default locations that exists. The plugin cache
    directory can be overridden with ``PROVGATE_PLUGIN_CACHE_DIR``.

    Raises:
        ConfigError: if the file cannot be read or parsed, or is invalid.
    """
    path = path or os.environ.get(Constants.ENV_CONFIG) or None
    try:
        data = _load_yaml_config(path)
    except FileNotFoundError as exc:
        raise ConfigError(f"configuration file not found: {path}") from exc
    except Exception as exc:  # pylint: disable=broad-exception-caught
        # yaml.YAMLError, json.JSONDecodeError and OSError all land here.
        raise ConfigError(f"failed to load configuration: {exc}") from exc

    config = parse_installation_config(data)
    override = os.environ.get(Constants.ENV_PLUGIN_CACHE_DIR)
    if override:
        config.plugin_cache_dir = override
    if config.plugin_cache_dir:
        config.plugin_cache_dir = os.path.expanduser(config.plugin_cache_dir)
    logger.debug(
        "Loaded installation config: %d sources, policy %s, plugin cache %s",
        len(config.sources),
        config.policy.value,
        config.plugin_cache_dir,
    )
    return config
