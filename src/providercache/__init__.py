"""Local provider cache and installer."""

from .dir import Dir
from .installer import InstallError, Installer, InstallResult

__all__ = ["Dir", "InstallError", "Installer", "InstallResult"]
