"""Token parsing utilities for provider requirements."""

import re
from typing import Any, Dict, Mapping, Optional, Tuple

from constants import Constants

from .constraints import VersionConstraints
from .errors import MalformedProviderAddress
from .models import PluginIdentity

# Requirements for many identities: identity -> AND-combined constraints.
Requirements = Dict[PluginIdentity, VersionConstraints]

_NAMESPACE_RE = re.compile(r"^[a-z0-9](?:[a-z0-9_-]*[a-z0-9])?$")
_TYPE_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
_HOSTNAME_RE = re.compile(r"^[a-z0-9.-]+(?::\d+)?$")


def tokenize_rightmost_colon(s: str) -> Tuple[str, Optional[str]]:
    """Return (source, constraints or None) using the rightmost-colon rule.

    A colon followed by a path segment belongs to a ``hostname:port`` and is
    not treated as the separator.
    """
    s = s.strip()
    if ':' not in s:
        return s, None
    source, spec_part = s.rsplit(':', 1)
    if '/' in spec_part:
        return s, None
    spec = spec_part.strip() or None
    return source.strip(), spec


def parse_provider_source(text: str) -> PluginIdentity:
    """Parse ``[hostname/]namespace/type`` into a normalized PluginIdentity."""
    parts = [p.strip() for p in text.strip().split("/")]
    if len(parts) == 2:
        parts.insert(0, Constants.DEFAULT_REGISTRY_HOST)
    if len(parts) != 3 or not all(parts):
        raise MalformedProviderAddress(
            f"invalid provider source {text!r}: must be of the form [hostname/]namespace/type"
        )
    hostname, namespace, type_name = (p.lower() for p in parts)
    if not _HOSTNAME_RE.match(hostname):
        raise MalformedProviderAddress(f"invalid hostname {hostname!r} in provider source {text!r}")
    if not _NAMESPACE_RE.match(namespace):
        raise MalformedProviderAddress(f"invalid namespace {namespace!r} in provider source {text!r}")
    if not _TYPE_RE.match(type_name):
        raise MalformedProviderAddress(f"invalid provider type {type_name!r} in provider source {text!r}")
    return PluginIdentity(hostname, namespace, type_name)


def parse_requirement(token: str) -> Tuple[PluginIdentity, VersionConstraints]:
    """Parse a ``source[:constraints]`` token, e.g. ``hashicorp/aws:~> 5.0``."""
    source, spec = tokenize_rightmost_colon(token)
    return parse_provider_source(source), VersionConstraints.parse(spec)


def parse_required_providers(block: Mapping[str, Any]) -> Requirements:
    """Build requirements from a ``required_providers``-shaped mapping.

    Each value is either a source string or a mapping with ``source`` and an
    optional ``version`` constraint string. A bare local name without a
    source defaults to the ``hashicorp`` namespace on the default registry.
    """
    requirements: Requirements = {}
    for local_name, entry in block.items():
        if isinstance(entry, str):
            source, version = entry, None
        elif isinstance(entry, Mapping):
            source = entry.get("source") or f"hashicorp/{local_name}"
            version = entry.get("version")
        else:
            raise MalformedProviderAddress(
                f"invalid requirement for {local_name!r}: expected a string or mapping"
            )
        identity = parse_provider_source(source)
        constraints = VersionConstraints.parse(version)
        requirements[identity] = VersionConstraints.merge(
            requirements.get(identity, VersionConstraints()), constraints
        )
    return requirements


def merge_requirements(*sources: Mapping[PluginIdentity, VersionConstraints]) -> Requirements:
    """AND together the constraints declared for each identity across sources."""
    merged: Requirements = {}
    for source in sources:
        for identity, constraints in source.items():
            merged[identity] = VersionConstraints.merge(
                merged.get(identity, VersionConstraints()), constraints
            )
    return merged
