# Copyright 2025 Sushanth (https://github.com/sushanthpy)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Error types for the NGT bindings.

NGT reports failure through a boolean/NULL return value plus a message stored
in an ``NGTError`` object. Each call site checks the status right away and
converts the message into one of the exceptions below, classified by
:class:`ErrorCode`.
"""

import logging
import re
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class ErrorCode(IntEnum):
    """Machine-readable error kinds."""
    INVALID_ARGUMENT = 1
    NOT_FOUND = 2
    IO_FAILURE = 3
    NATIVE_FAILURE = 4
    PRECONDITION_VIOLATION = 5
    NOT_SUPPORTED = 6
    # native failure without any message; kept for newer libngt releases
    UNRECOGNIZED = 99


class NgtError(Exception):
    """Base class for every error raised by this package."""

    code = ErrorCode.NATIVE_FAILURE

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.name,
            "message": self.message,
            "details": {k: self.details[k] for k in sorted(self.details)},
        }


class InvalidArgumentError(NgtError, ValueError):
    """Bad dimension, out-of-range property, malformed path or vector."""
    code = ErrorCode.INVALID_ARGUMENT


class DimensionMismatchError(InvalidArgumentError):
    """Vector length does not match the index dimension."""
    pass


class NotFoundError(NgtError, LookupError):
    """Unknown or removed object id, or missing index directory."""
    code = ErrorCode.NOT_FOUND


class IOFailureError(NgtError):
    """Index files could not be created, read or written."""
    code = ErrorCode.IO_FAILURE


class IndexExistsError(IOFailureError):
    """An index (or other content) already occupies the target path."""
    pass


class NativeError(NgtError):
    """Opaque failure reported by libngt."""
    code = ErrorCode.NATIVE_FAILURE


class PreconditionError(NgtError):
    """Operation is not valid in the index's current state."""
    code = ErrorCode.PRECONDITION_VIOLATION


class NotSupportedError(NgtError):
    """The loaded libngt lacks the entry point for this operation."""
    code = ErrorCode.NOT_SUPPORTED


class UnrecognizedError(NgtError):
    """libngt failed without saying why."""
    code = ErrorCode.UNRECOGNIZED


_ERROR_CLASSES = {
    ErrorCode.INVALID_ARGUMENT: InvalidArgumentError,
    ErrorCode.NOT_FOUND: NotFoundError,
    ErrorCode.IO_FAILURE: IOFailureError,
    ErrorCode.NATIVE_FAILURE: NativeError,
    ErrorCode.PRECONDITION_VIOLATION: PreconditionError,
    ErrorCode.NOT_SUPPORTED: NotSupportedError,
    ErrorCode.UNRECOGNIZED: UnrecognizedError,
}

# First match wins. Patterns follow the wording of NGT's exception messages.
_MESSAGE_PATTERNS: Tuple[Tuple["re.Pattern[str]", ErrorCode], ...] = (
    (re.compile(r"not (?:be )?found|no such|does not exist|not exist|already removed"
                r"|removed object|invalid (?:object )?id|out of range", re.I),
     ErrorCode.NOT_FOUND),
    (re.compile(r"cannot (?:open|make|create|write|read)|can't (?:open|make|create)"
                r"|mkdir|permission denied|i/o|file", re.I),
     ErrorCode.IO_FAILURE),
    (re.compile(r"dimension|invalid|illegal|not supported|mismatch", re.I),
     ErrorCode.INVALID_ARGUMENT),
    (re.compile(r"not (?:yet )?built|empty index|no objects", re.I),
     ErrorCode.PRECONDITION_VIOLATION),
)


def classify(message: Optional[str], default: ErrorCode = ErrorCode.NATIVE_FAILURE) -> ErrorCode:
    """Map a native error message to an :class:`ErrorCode`.

    A call site that knows what its failure means (``remove`` can only fail
    on an unknown id, ``persist`` on I/O) passes that kind as ``default`` and
    it is returned as is. Otherwise the message is matched against NGT's
    wording; an empty message is ``UNRECOGNIZED``.
    """
    if default != ErrorCode.NATIVE_FAILURE:
        return default
    if not message:
        return ErrorCode.UNRECOGNIZED
    for pattern, code in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return code
    return ErrorCode.NATIVE_FAILURE


def error_from_native(
    message: Optional[str],
    default: ErrorCode = ErrorCode.NATIVE_FAILURE,
    context: str = "",
) -> NgtError:
    """Build the exception instance for a native failure."""
    code = classify(message, default)
    text = message or "libngt reported a failure without a message"
    if context:
        text = f"{context}: {text}"
    return _ERROR_CLASSES[code](text, {"native_message": message or ""})


class NativeErrorBuffer:
    """Owns one native ``NGTError`` object.

    Each native call is handed :attr:`handle`; after the call,
    :meth:`raise_for_status` turns a failed status into an exception and
    clears the native message so the buffer can be reused.
    """

    __slots__ = ("_lib", "_handle")

    def __init__(self, lib):
        self._lib = lib
        self._handle = lib.ngt_create_error_object()
        if not self._handle:
            raise NativeError("Failed to allocate NGT error object")

    @property
    def handle(self):
        if self._handle is None:
            raise PreconditionError("NGT error object already released")
        return self._handle

    def message(self) -> str:
        raw = self._lib.ngt_get_error_string(self.handle)
        if not raw:
            return ""
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace").strip()
        return str(raw).strip()

    def clear(self) -> None:
        self._lib.ngt_clear_error_string(self.handle)

    def raise_for_status(
        self,
        ok,
        default: ErrorCode = ErrorCode.NATIVE_FAILURE,
        context: str = "",
    ) -> None:
        """Raise if ``ok`` is falsy (``False``, ``0`` or a NULL pointer)."""
        if ok:
            return
        message = self.message()
        self.clear()
        err = error_from_native(message, default, context)
        logger.debug(f"NGT call failed ({err.code.name}): {err.message}")
        raise err

    def close(self) -> None:
        if self._handle is not None:
            self._lib.ngt_destroy_error_object(self._handle)
            self._handle = None

    def __enter__(self) -> "NativeErrorBuffer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __del__(self):
        if getattr(self, "_handle", None) is not None:
            self.close()
