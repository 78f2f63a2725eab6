from .cli import CliRunner
from .registry import ProviderMetadata, ProviderSpec, build_fetchers, build_metadata, build_specs

__all__ = [
    "CliRunner",
    "ProviderMetadata",
    "ProviderSpec",
    "build_fetchers",
    "build_metadata",
    "build_specs",
]
