"""Custom exception hierarchy for meshdots."""

from __future__ import annotations


class MeshDotsError(Exception):
    """Base exception for all meshdots errors."""


class MeshDotsConfigError(MeshDotsError):
    """Invalid or missing configuration."""


class FrameDecodeError(MeshDotsError):
    """A MeshCore frame or ADVERT payload is truncated or malformed.

    Only raised inside the decoder. The public decode functions convert it
    into a :class:`meshdots.models.frame.DecodeFailure` value.
    """


class StorageError(MeshDotsError):
    """Key-value store failure (connection, command, or decode error)."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        key: str = "",
    ) -> None:
        self.operation = operation
        self.key = key
        super().__init__(message)


class StorageTimeoutError(StorageError):
    """A pipelined batch did not complete within the caller-side timeout."""
