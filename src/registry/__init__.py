"""Provider installation sources.

This package provides the sources that can offer provider packages (local
directory, static network mirror, templated OCI mirror and origin registry),
the package location kinds they return, and the chain that queries them in
configured order.
"""

from .base import InstallationSource, SourceError
from .chain import ChainPolicy, SourceChain
from .direct import RegistrySource
from .local import LocalDirectorySource, search_local_directory
from .locations import (
    ChecksumMismatch,
    PackageHTTPURL,
    PackageLocalArchive,
    PackageLocalDir,
    PackageLocation,
    PackageMaterializationError,
    PackageOCIReference,
)
from .network_mirror import StaticMirrorSource
from .oci_mirror import OCIMirrorSource
from .template import CompiledTemplate, TemplateEvaluationError, TemplateSyntaxError, compile_template

__all__ = [
    "InstallationSource",
    "SourceError",
    "ChainPolicy",
    "SourceChain",
    "RegistrySource",
    "LocalDirectorySource",
    "search_local_directory",
    "ChecksumMismatch",
    "PackageHTTPURL",
    "PackageLocalArchive",
    "PackageLocalDir",
    "PackageLocation",
    "PackageMaterializationError",
    "PackageOCIReference",
    "StaticMirrorSource",
    "OCIMirrorSource",
    "CompiledTemplate",
    "TemplateEvaluationError",
    "TemplateSyntaxError",
    "compile_template",
]
