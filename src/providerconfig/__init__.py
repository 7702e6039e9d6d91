"""Provider configuration composition."""

from .compose import (
    Block,
    Body,
    EvalContext,
    InternalInvariantError,
    ProviderInstanceAddress,
    ProviderNotInitialized,
    ProviderSchemaError,
    build_provider_config,
    get_provider,
    merge_bodies,
    synth_body,
)

__all__ = [
    "Block",
    "Body",
    "EvalContext",
    "InternalInvariantError",
    "ProviderInstanceAddress",
    "ProviderNotInitialized",
    "ProviderSchemaError",
    "build_provider_config",
    "get_provider",
    "merge_bodies",
    "synth_body",
]
