from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Missing or invalid configuration; raised before any processing starts."""


class BackupFormatError(ValueError):
    def __init__(self, path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message
