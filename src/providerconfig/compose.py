"""Composition of the configuration body handed to a provider instance.

A provider instance may be configured by an explicit block in the
configuration and by values collected interactively. The two are combined
into one body before the provider validates and applies it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from versioning.models import PluginIdentity

logger = logging.getLogger(__name__)

INPUT_PROMPT_LABEL = "<input-prompt>"


class InternalInvariantError(AssertionError):
    """The calling engine broke a contract; this is a defect, not a user error."""


class ProviderNotInitialized(InternalInvariantError):
    """No provider handle exists yet for the requested instance."""

    def __init__(self, addr: "ProviderInstanceAddress"):
        self.addr = addr
        super().__init__(f"provider {addr} not initialized")


class ProviderSchemaError(Exception):
    """The provider failed to report its schema."""

    def __init__(self, addr: "ProviderInstanceAddress", cause: Exception):
        self.addr = addr
        self.cause = cause
        super().__init__(f"failed to read schema for provider {addr}: {cause}")


@dataclass(frozen=True)
class Block:
    """A nested block inside a body, e.g. ``assume_role { ... }``."""
    type: str
    body: "Body"
    labels: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Body:
    """A configuration body: named attributes plus nested blocks.

    ``label`` only describes where the body came from and shows up in
    diagnostics.
    """
    label: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    blocks: Tuple[Block, ...] = ()


def synth_body(label: str, attributes: Mapping[str, Any]) -> Body:
    """Build a body holding exactly ``attributes``."""
    return Body(label=label, attributes=dict(attributes))


def merge_bodies(bodies: Sequence[Body]) -> Body:
    """Merge bodies in order; an attribute set by a later body wins.

    Blocks are never merged with each other, they are concatenated.
    """
    attributes: Dict[str, Any] = {}
    blocks: Tuple[Block, ...] = ()
    for body in bodies:
        attributes.update(body.attributes)
        blocks += tuple(body.blocks)
    label = " + ".join(body.label for body in bodies)
    return Body(label=label, attributes=attributes, blocks=blocks)


@dataclass(frozen=True)
class ProviderInstanceAddress:
    """A provider configuration instance within the module tree."""
    identity: PluginIdentity
    alias: Optional[str] = None
    module: Tuple[str, ...] = ()

    def __str__(self) -> str:
        prefix = "".join(f"module.{name}." for name in self.module)
        text = f'{prefix}provider["{self.identity}"]'
        if self.alias:
            text += f".{self.alias}"
        return text


class EvalContext(Protocol):
    """Capabilities the execution engine provides to the composer."""

    def provider(self, addr: ProviderInstanceAddress) -> Any:
        """The initialized provider handle, or None."""

    def provider_schema(self, addr: ProviderInstanceAddress) -> Any:
        """The provider's schema; raises when it cannot be read."""

    def provider_input(self, addr: ProviderInstanceAddress) -> Mapping[str, Any]:
        """Values collected interactively for ``addr``; may be empty."""


def build_provider_config(
    ctx: EvalContext,
    addr: ProviderInstanceAddress,
    config_body: Optional[Body] = None,
) -> Body:
    """Return the body to configure ``addr`` with.

    Explicit configuration takes precedence over input values attribute by
    attribute. With neither, an empty body labelled after the instance is
    returned so that schema validation still has something to check.
    """
    input_config = ctx.provider_input(addr)
    input_body = synth_body(INPUT_PROMPT_LABEL, input_config) if input_config else None

    if config_body is not None and input_body is not None:
        logger.debug("Provider config for %s: merging explicit config and input", addr)
        return merge_bodies([input_body, config_body])
    if config_body is not None:
        logger.debug("Provider config for %s: using explicit config only", addr)
        return config_body
    if input_body is not None:
        logger.debug("Provider config for %s: using input only", addr)
        return input_body
    logger.debug("Provider config for %s: no configuration at all", addr)
    return synth_body(f"{addr} with no configuration", {})


def get_provider(ctx: EvalContext, addr: ProviderInstanceAddress) -> Tuple[Any, Any]:
    """Return ``(handle, schema)`` for ``addr``.

    Raises:
        InternalInvariantError: if ``addr`` has no provider type.
        ProviderNotInitialized: if the context holds no handle for ``addr``.
        ProviderSchemaError: if the provider's schema cannot be read.
    """
    if not addr.identity.type:
        raise InternalInvariantError("get_provider used with uninitialized provider configuration address")
    handle = ctx.provider(addr)
    if handle is None:
        raise ProviderNotInitialized(addr)
    # A None schema is left for callers to check; not all of them need one.
    try:
        schema = ctx.provider_schema(addr)
    except Exception as exc:
        raise ProviderSchemaError(addr, exc) from exc
    return handle, schema
