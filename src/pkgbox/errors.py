from __future__ import annotations

from dataclasses import dataclass

INSTALL_ERROR_SUMMARY = "There was an error installing packages"


class PkgboxError(RuntimeError):
    pass


class UserError(PkgboxError):
    """An error the user can act on directly; shown without a wrapping summary."""


class NotFoundError(UserError):
    pass


class InvalidPlatformError(UserError):
    pass


class PlatformIncompatibleError(UserError):
    def __init__(self, package: str, platform: str) -> None:
        self.package = package
        self.platform = platform
        super().__init__(
            f"package {package} cannot be installed on your platform {platform}.\n"
            f"If you know this package is incompatible with {platform}, then "
            f"you could run `pkgbox add {package} --exclude-platform {platform}` and re-try.\n"
            f"If you think this package should be compatible with {platform}, then "
            "it's possible this particular version is not available yet from the nix registry. "
            "You could try `pkgbox add` with a different version for this package."
        )


class CannotBuildOnSystemError(PkgboxError):
    """The package exists in the search index but has no build for this system."""

    def __init__(self, package: str, platform: str) -> None:
        self.package = package
        self.platform = platform
        super().__init__(f"Package {package} cannot be built on {platform}")


class ValidationError(PkgboxError):
    pass


@dataclass(frozen=True)
class DownstreamToolError(PkgboxError):
    command: tuple[str, ...]
    returncode: int
    stderr: str = ""

    def __str__(self) -> str:
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else "no output"
        return f"`{' '.join(self.command)}` exited with code {self.returncode}: {detail}"


class CancelledError(PkgboxError):
    pass


class InstallationError(PkgboxError):
    def __init__(self, summary: str = INSTALL_ERROR_SUMMARY) -> None:
        self.summary = summary
        super().__init__(summary)

    def __str__(self) -> str:
        if self.__cause__ is not None:
            return f"{self.summary}: {self.__cause__}"
        return self.summary
