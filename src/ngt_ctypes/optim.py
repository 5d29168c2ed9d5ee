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
Index maintenance and optimization passes.

Every function here is a blocking one-shot call into libngt with the same
failure semantics as ``Index.build``:

- :func:`quantize` turns a built index into a QG index (see ``qg.py``)
- :func:`optimize_anng_edges_number` tunes the edge count of an ANNG on disk
- :func:`refine_anng` refines the graph of an open :class:`Index`
- :class:`GraphOptimizer` adjusts search coefficients and converts an ANNG
  into an ONNG
"""

import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Tuple

from ._ffi import _FFI, AnngEdgeOptimizationParameter, encode_path
from .errors import (
    ErrorCode,
    IndexExistsError,
    InvalidArgumentError,
    NativeErrorBuffer,
    NotFoundError,
    PreconditionError,
)
from .index import Index
from .qg import QGQuantizationParams

logger = logging.getLogger(__name__)


def _positive_int(value, what: str, allow_zero: bool = False) -> None:
    low = 0 if allow_zero else 1
    if isinstance(value, bool) or not isinstance(value, int) or value < low:
        raise InvalidArgumentError(f"{what} must be an integer >= {low}, got {value!r}")


def _index_dir(path) -> bytes:
    raw = encode_path(path)
    if not os.path.isdir(os.fsdecode(raw)):
        raise NotFoundError(f"No index directory at {os.fsdecode(raw)!r}")
    return raw


# ============================================================================
# Quantization
# ============================================================================

def quantize(index_path, params: QGQuantizationParams = QGQuantizationParams()) -> None:
    """Quantize the built index at ``index_path`` so it can be opened as a QGIndex."""
    lib = _FFI.require("qg")
    raw = _index_dir(index_path)
    t0 = time.perf_counter()
    logger.info(f"Quantizing {os.fsdecode(raw)!r}")
    with NativeErrorBuffer(lib) as err:
        ok = lib.ngtqg_quantize(raw, params._to_native(), err.handle)
        err.raise_for_status(ok, context="quantize")
    logger.info(f"Quantized {os.fsdecode(raw)!r} in {time.perf_counter() - t0:.3f}s")


# ============================================================================
# ANNG edge optimization
# ============================================================================

@dataclass(frozen=True)
class AnngEdgeOptimParams:
    """Parameters for :func:`optimize_anng_edges_number`."""
    nb_queries: int = 200
    nb_results: int = 50
    nb_threads: int = 16
    target_accuracy: float = 0.9
    target_nb_objects: int = 0
    nb_sample_objects: int = 100000
    nb_edges_max: int = 100
    log: bool = False

    def __post_init__(self):
        _positive_int(self.nb_queries, "nb_queries")
        _positive_int(self.nb_results, "nb_results")
        _positive_int(self.nb_threads, "nb_threads")
        _positive_int(self.target_nb_objects, "target_nb_objects", allow_zero=True)
        _positive_int(self.nb_sample_objects, "nb_sample_objects")
        _positive_int(self.nb_edges_max, "nb_edges_max")
        if not 0.0 < self.target_accuracy <= 1.0:
            raise InvalidArgumentError(
                f"target_accuracy must be in (0, 1], got {self.target_accuracy}"
            )

    def _to_native(self) -> AnngEdgeOptimizationParameter:
        return AnngEdgeOptimizationParameter(
            no_of_queries=self.nb_queries,
            no_of_results=self.nb_results,
            no_of_threads=self.nb_threads,
            target_accuracy=self.target_accuracy,
            target_no_of_objects=self.target_nb_objects,
            no_of_sample_objects=self.nb_sample_objects,
            max_of_no_of_edges=self.nb_edges_max,
            log=self.log,
        )


def optimize_anng_edges_number(index_path, params: AnngEdgeOptimParams = AnngEdgeOptimParams()) -> None:
    """Optimize the number of edges of the ANNG stored at ``index_path``."""
    lib = _FFI.require("refine")
    raw = _index_dir(index_path)
    t0 = time.perf_counter()
    logger.info(f"Optimizing ANNG edge count of {os.fsdecode(raw)!r}")
    with NativeErrorBuffer(lib) as err:
        ok = lib.ngt_optimize_number_of_edges(raw, params._to_native(), err.handle)
        err.raise_for_status(ok, context="optimize number of edges")
    logger.info(f"Optimized edges of {os.fsdecode(raw)!r} in {time.perf_counter() - t0:.3f}s")


# ============================================================================
# ANNG refinement
# ============================================================================

@dataclass(frozen=True)
class AnngRefineParams:
    """Parameters for :func:`refine_anng`."""
    epsilon: float = 0.1
    expected_accuracy: float = 0.0
    nb_edges: int = 0
    edge_size: int = -1
    batch_size: int = 10000

    def __post_init__(self):
        if not math.isfinite(self.epsilon) or self.epsilon <= -1.0:
            raise InvalidArgumentError(f"epsilon must be a finite number > -1, got {self.epsilon}")
        if not 0.0 <= self.expected_accuracy <= 1.0:
            raise InvalidArgumentError(
                f"expected_accuracy must be in [0, 1], got {self.expected_accuracy}"
            )
        _positive_int(self.nb_edges, "nb_edges", allow_zero=True)
        if isinstance(self.edge_size, bool) or not isinstance(self.edge_size, int) \
                or self.edge_size < -1:
            raise InvalidArgumentError(f"edge_size must be an integer >= -1, got {self.edge_size!r}")
        _positive_int(self.batch_size, "batch_size")


def refine_anng(index: Index, params: AnngRefineParams = AnngRefineParams()) -> None:
    """Refine the graph of an open, built ``index`` in place."""
    lib = _FFI.require("refine")
    if not isinstance(index, Index):
        raise InvalidArgumentError(f"Expected an Index, got {type(index).__name__}")
    handle = index._require_open()
    if not index.is_built:
        raise PreconditionError("Index has not been built; call build() first")

    t0 = time.perf_counter()
    logger.info(f"Refining ANNG at {index.path!r}")
    ok = lib.ngt_refine_anng(
        handle,
        params.epsilon,
        params.expected_accuracy,
        params.nb_edges,
        params.edge_size,
        params.batch_size,
        index._err.handle,
    )
    index._err.raise_for_status(ok, context="refine ANNG")
    logger.info(f"Refined ANNG at {index.path!r} in {time.perf_counter() - t0:.3f}s")


# ============================================================================
# Graph optimizer
# ============================================================================

@dataclass(frozen=True)
class GraphOptimParams:
    """Parameters for :class:`GraphOptimizer`."""
    nb_outgoing: int = 10
    nb_incoming: int = 120
    nb_queries: int = 100
    base_accuracy_range: Tuple[float, float] = (0.30, 0.50)
    rate_accuracy_range: Tuple[float, float] = (20.0, 0.0)
    gt_epsilon: float = 0.1
    merge: float = 0.2
    log_disabled: bool = True

    def __post_init__(self):
        _positive_int(self.nb_outgoing, "nb_outgoing")
        _positive_int(self.nb_incoming, "nb_incoming")
        _positive_int(self.nb_queries, "nb_queries")
        for name in ("base_accuracy_range", "rate_accuracy_range"):
            value = getattr(self, name)
            if len(value) != 2 or not all(math.isfinite(v) for v in value):
                raise InvalidArgumentError(f"{name} must be a pair of finite numbers, got {value!r}")
            object.__setattr__(self, name, (float(value[0]), float(value[1])))
        if not math.isfinite(self.gt_epsilon) or not math.isfinite(self.merge):
            raise InvalidArgumentError("gt_epsilon and merge must be finite")


class GraphOptimizer:
    """
    Owns a native NGT graph optimizer.

    Example:
        >>> with GraphOptimizer(GraphOptimParams()) as optimizer:
        ...     optimizer.convert_anng_to_onng("anng", "onng")
        ...     optimizer.adjust_search_coefficients("onng")
    """

    def __init__(self, params: GraphOptimParams = GraphOptimParams()):
        lib = _FFI.require("optimizer")
        self._lib = lib
        self._params = params
        self._err = NativeErrorBuffer(lib)
        self._handle = None
        try:
            handle = lib.ngt_create_optimizer(params.log_disabled, self._err.handle)
            self._err.raise_for_status(handle, context="create optimizer")
            self._handle = handle
            ok = lib.ngt_optimizer_set(
                handle,
                params.nb_outgoing,
                params.nb_incoming,
                params.nb_queries,
                params.base_accuracy_range[0],
                params.base_accuracy_range[1],
                params.rate_accuracy_range[0],
                params.rate_accuracy_range[1],
                params.gt_epsilon,
                params.merge,
                self._err.handle,
            )
            self._err.raise_for_status(ok, ErrorCode.INVALID_ARGUMENT, "configure optimizer")
        except BaseException:
            self.close()
            raise

    @property
    def params(self) -> GraphOptimParams:
        return self._params

    def _require_open(self):
        if self._handle is None:
            raise PreconditionError("GraphOptimizer is closed")
        return self._handle

    def adjust_search_coefficients(self, index_path) -> None:
        """Tune the search coefficients stored with the index at ``index_path``."""
        handle = self._require_open()
        raw = _index_dir(index_path)
        t0 = time.perf_counter()
        logger.info(f"Adjusting search coefficients of {os.fsdecode(raw)!r}")
        ok = self._lib.ngt_optimizer_adjust_search_coefficients(handle, raw, self._err.handle)
        self._err.raise_for_status(ok, context="adjust search coefficients")
        logger.info(f"Adjusted {os.fsdecode(raw)!r} in {time.perf_counter() - t0:.3f}s")

    def convert_anng_to_onng(self, in_path, out_path) -> None:
        """Write an ONNG built from the ANNG at ``in_path`` to ``out_path``."""
        handle = self._require_open()
        raw_in = _index_dir(in_path)
        raw_out = encode_path(out_path)
        if os.path.exists(os.fsdecode(raw_out)):
            raise IndexExistsError(f"Path {os.fsdecode(raw_out)!r} already exists")
        t0 = time.perf_counter()
        logger.info(f"Converting ANNG {os.fsdecode(raw_in)!r} to ONNG {os.fsdecode(raw_out)!r}")
        ok = self._lib.ngt_optimizer_execute(handle, raw_in, raw_out, self._err.handle)
        self._err.raise_for_status(ok, context="convert ANNG to ONNG")
        logger.info(f"Converted to ONNG in {time.perf_counter() - t0:.3f}s")

    def close(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            self._lib.ngt_destroy_optimizer(handle)
        self._err.close()

    def __enter__(self) -> "GraphOptimizer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __del__(self):
        if getattr(self, "_handle", None) is not None:
            self.close()
