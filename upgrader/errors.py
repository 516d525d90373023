"""Failure taxonomy shared by the trust store, applier and interpreter."""

from __future__ import annotations


class UpgraderError(RuntimeError):
    """Base error; ``fatal`` errors abort the whole run."""

    fatal = False
    result = "FAIL_UNHANDLED"

    def __init__(self, message: str, *, fatal: bool | None = None, state: dict | None = None) -> None:
        super().__init__(message)
        if fatal is not None:
            self.fatal = fatal
        self.state = state or {}


class MissingFile(UpgraderError):
    pass


class MalformedKeyring(UpgraderError):
    pass


class KeyringExpired(UpgraderError):
    pass


class KeyringAlreadyLoaded(UpgraderError):
    pass


class KeyRevoked(UpgraderError):
    pass


class SignerNotLoaded(UpgraderError):
    pass


class InvalidSignature(UpgraderError):
    result = "FAIL_SIGNATURE"


class UnrepairableFilesystem(UpgraderError):
    fatal = True
    result = "FAIL_FILESYSTEM"


class UndeterminedPartition(UpgraderError):
    result = "FAIL_PARTITION"


class UnknownCommand(UpgraderError):
    pass


class UnknownTarget(UpgraderError):
    pass
