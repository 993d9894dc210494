"""Exception types raised while loading network configurations and running plugins."""

from __future__ import annotations

import json
from typing import Iterable


class CNIError(Exception):
    """Base class for every error raised by this package."""


class NotFoundError(CNIError):
    """No configuration with the requested network name exists in a directory."""

    def __init__(self, directory: str, name: str) -> None:
        self.directory = directory
        self.name = name
        super().__init__(f'no net configuration with name "{name}" in {directory}')


class NoConfigsFoundError(CNIError):
    """A configuration directory holds no configuration files at all."""

    def __init__(self, directory: str) -> None:
        self.directory = directory
        super().__init__(f"no net configurations found in {directory}")


class CheckNotSupportedError(CNIError):
    """The configuration version predates the CHECK command."""

    def __init__(self, version: str) -> None:
        self.version = version
        quoted = json.dumps(version, ensure_ascii=False)
        super().__init__(
            f"configuration version {quoted} does not support the CHECK command"
        )


class MultiError(CNIError):
    """Several errors collected into one; its message has one line per error."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(str(error) for error in self.errors))

    def __iter__(self):
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


def join_errors(*args: BaseException | None) -> MultiError | None:
    """Combine the given errors, ignoring None; return None when nothing is left."""
    errors = [error for error in args if error is not None]
    if not errors:
        return None
    return MultiError(errors)