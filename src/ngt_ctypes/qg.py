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
Quantized graph (QG) indexes.

A QG index is derived from a built NGT index with
:func:`ngt_ctypes.optim.quantize` and then opened read-only:

    >>> optim.quantize("path/to/index", QGQuantizationParams())
    >>> with QGIndex.open("path/to/index") as index:
    ...     results = index.search(QGQuery(vector, size=10))

libngt builds with shared memory support do not include QG; on those every
entry point here raises :class:`NotSupportedError`.
"""

import ctypes
import logging
import math
import os
from dataclasses import dataclass, field
from typing import List

import numpy as np

from ._ffi import _FFI, QGQuantizationParameters, QGQueryStruct, encode_path
from .errors import (
    ErrorCode,
    InvalidArgumentError,
    NativeErrorBuffer,
    NotFoundError,
)
from .index import SearchResult, _NativeIndex, _as_query, _collect_results
from .properties import Properties

logger = logging.getLogger(__name__)

_FLT_MAX = float(np.finfo(np.float32).max)


@dataclass(frozen=True)
class QGQuantizationParams:
    """Parameters for :func:`ngt_ctypes.optim.quantize`."""
    dimension_of_subvector: float = 0.0   # 0 lets NGT choose
    max_number_of_edges: int = 128

    def __post_init__(self):
        if not math.isfinite(self.dimension_of_subvector) or self.dimension_of_subvector < 0:
            raise InvalidArgumentError(
                f"dimension_of_subvector must be >= 0, got {self.dimension_of_subvector}"
            )
        if isinstance(self.max_number_of_edges, bool) or \
                not isinstance(self.max_number_of_edges, int) or self.max_number_of_edges < 1:
            raise InvalidArgumentError(
                f"max_number_of_edges must be a positive integer, got {self.max_number_of_edges!r}"
            )

    def _to_native(self) -> QGQuantizationParameters:
        return QGQuantizationParameters(
            dimension_of_subvector=self.dimension_of_subvector,
            max_number_of_edges=self.max_number_of_edges,
        )


@dataclass(frozen=True, eq=False)
class QGQuery:
    """A QG search request."""
    query: np.ndarray
    size: int = 20
    epsilon: float = 0.03
    result_expansion: float = 3.0
    radius: float = _FLT_MAX
    _buffer: np.ndarray = field(init=False, repr=False, compare=False, default=None)

    def __post_init__(self):
        if isinstance(self.size, bool) or not isinstance(self.size, int) or self.size < 1:
            raise InvalidArgumentError(f"size must be a positive integer, got {self.size!r}")
        for name in ("epsilon", "result_expansion", "radius"):
            value = getattr(self, name)
            try:
                object.__setattr__(self, name, float(value))
            except (TypeError, ValueError):
                raise InvalidArgumentError(f"{name} must be a number, got {value!r}") from None
        if not math.isfinite(self.epsilon) or self.epsilon <= -1.0:
            raise InvalidArgumentError(f"epsilon must be a finite number > -1, got {self.epsilon}")
        if not math.isfinite(self.result_expansion) or self.result_expansion <= 0:
            raise InvalidArgumentError(
                f"result_expansion must be positive, got {self.result_expansion}"
            )
        if not self.radius >= 0:
            raise InvalidArgumentError(f"radius must be non-negative, got {self.radius}")

    def _to_native(self, dimension: int) -> QGQueryStruct:
        # the struct borrows the buffer, so keep it alive on the query
        q = _as_query(self.query, dimension)
        object.__setattr__(self, "_buffer", q)
        return QGQueryStruct(
            query=q.ctypes.data_as(ctypes.POINTER(ctypes.c_float)),
            size=self.size,
            epsilon=self.epsilon,
            result_expansion=self.result_expansion,
            radius=min(self.radius, _FLT_MAX),
        )


class QGIndex(_NativeIndex):
    """Read-only quantized graph index."""

    _close_func = "ngtqg_close_index"

    @classmethod
    def open(cls, path) -> "QGIndex":
        """
        Open a quantized index.

        Raises:
            NotSupportedError: libngt was built without QG
            NotFoundError: ``path`` is not a directory
            IOFailureError: The index has not been quantized or cannot be read
        """
        raw_path = encode_path(path)
        path = os.fsdecode(raw_path)
        lib = _FFI.require("qg")
        if not os.path.isdir(path):
            raise NotFoundError(f"No index directory at {path!r}")

        err = NativeErrorBuffer(lib)
        handle = None
        try:
            handle = lib.ngtqg_open_index(raw_path, err.handle)
            err.raise_for_status(handle, ErrorCode.IO_FAILURE, f"open QG index at {path!r}")
            # QG indexes are NGT indexes underneath
            properties = Properties._from_index(lib, handle, err)
        except BaseException:
            if handle:
                lib.ngtqg_close_index(handle)
            err.close()
            raise

        logger.info(f"Opened QG index at {path!r} ({properties.to_dict()})")
        return cls(lib, handle, err, path, properties)

    def search(self, query: QGQuery) -> List[SearchResult]:
        """Run a QG search; results are ordered by ascending distance."""
        handle = self._require_open()
        if not isinstance(query, QGQuery):
            raise InvalidArgumentError(f"Expected a QGQuery, got {type(query).__name__}")
        raw_query = query._to_native(self.dimension)

        lib, err = self._lib, self._err
        results = lib.ngt_create_empty_results(err.handle)
        err.raise_for_status(results, context="ngt_create_empty_results")
        try:
            ok = lib.ngtqg_search_index(handle, raw_query, results, err.handle)
            err.raise_for_status(ok, context="QG search")
            return _collect_results(lib, results, err)
        finally:
            lib.ngt_destroy_results(results)
