from ._version import __version__
from .cancel import CancelToken
from .client import SearchClient
from .errors import (
    InstallationError,
    NotFoundError,
    PkgboxError,
    PlatformIncompatibleError,
)
from .project import AddOpts, InstallMode, Project

__all__ = [
    "AddOpts",
    "CancelToken",
    "InstallMode",
    "InstallationError",
    "NotFoundError",
    "PkgboxError",
    "PlatformIncompatibleError",
    "Project",
    "SearchClient",
    "__version__",
]
