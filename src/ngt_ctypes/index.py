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
NGT Index

Owning wrapper around a native NGT graph-and-tree index.

Example:
    >>> prop = Properties.with_dimension(3)
    >>> with Index.create("path/to/index", prop) as index:
    ...     id1 = index.insert([1.0, 2.0, 3.0])
    ...     id2 = index.insert([4.0, 5.0, 6.0])
    ...     index.build(2)
    ...     index.search([1.1, 2.1, 3.1], k=1)[0].id == id1
    ...     index.persist()
    True
"""

import ctypes
import logging
import math
import os
import time
import warnings
from typing import List, NamedTuple, Optional

import numpy as np

from ._ffi import _FFI, PerformanceWarning, encode_path
from .errors import (
    DimensionMismatchError,
    ErrorCode,
    IndexExistsError,
    InvalidArgumentError,
    NativeErrorBuffer,
    NotFoundError,
    PreconditionError,
)
from .properties import ObjectType, Properties

logger = logging.getLogger(__name__)

VecId = int

#: Default search expansion factor.
EPSILON = 0.1

_MAX_OBJECT_ID = 2 ** 32 - 1


class SearchResult(NamedTuple):
    """One neighbor: object id and its distance to the query."""
    id: VecId
    distance: float


# ============================================================================
# Argument helpers
# ============================================================================

def _check_id(id) -> int:
    if isinstance(id, bool) or not isinstance(id, (int, np.integer)):
        raise InvalidArgumentError(f"Object id must be an integer, got {id!r}")
    id = int(id)
    if id < 0 or id > _MAX_OBJECT_ID:
        raise InvalidArgumentError(f"Object id out of range: {id}")
    if id == 0:
        # NGT numbers objects from 1
        raise NotFoundError("Object id 0 is never assigned")
    return id


def _as_vectors(data, dimension: int, object_type: ObjectType, ndim: int) -> np.ndarray:
    """Validate ``data`` and return a C-contiguous array in the index dtype."""
    try:
        arr = np.asarray(data)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"Cannot interpret vector data: {e}") from None
    if arr.ndim != ndim:
        raise DimensionMismatchError(
            f"Expected a {ndim}-D array, got shape {arr.shape}"
        )
    if arr.shape[-1] != dimension:
        raise DimensionMismatchError(
            f"Vector dimension mismatch: expected {dimension}, got {arr.shape[-1]}"
        )
    if arr.dtype.kind not in "biuf":
        raise InvalidArgumentError(f"Vectors must be numeric, got dtype {arr.dtype}")

    if object_type == ObjectType.UINT8:
        if arr.dtype.kind == "f":
            if not np.all(np.isfinite(arr)) or not np.all(arr == np.floor(arr)):
                raise InvalidArgumentError("UINT8 vectors must hold integral values")
        if arr.size and (arr.min() < 0 or arr.max() > 255):
            raise InvalidArgumentError("UINT8 vectors must hold values in [0, 255]")

    return np.ascontiguousarray(arr, dtype=object_type.dtype)


def _as_query(query, dimension: int) -> np.ndarray:
    q = _as_vectors(query, dimension, ObjectType.FLOAT, 1)
    if not np.all(np.isfinite(q)):
        raise InvalidArgumentError("Query vector contains NaN or infinite values")
    return q


def _count_pending(lib, handle, err: NativeErrorBuffer) -> int:
    # objects stored on disk but not yet in the graph
    total = lib.ngt_get_number_of_objects(handle, err.handle)
    indexed = lib.ngt_get_number_of_indexed_objects(handle, err.handle)
    return max(int(total) - int(indexed), 0)


def _collect_results(lib, results, err: NativeErrorBuffer) -> List[SearchResult]:
    size = lib.ngt_get_result_size(results, err.handle)
    output = []
    for i in range(size):
        r = lib.ngt_get_result(results, i, err.handle)
        output.append(SearchResult(int(r.id), float(r.distance)))
    return output


# ============================================================================
# Handle ownership
# ============================================================================

class _NativeIndex:
    """Single owner of a native index handle.

    The handle is released exactly once: by :meth:`close`, by leaving a
    ``with`` block, or (with a ``ResourceWarning``) by garbage collection.
    After release ``_handle`` is ``None`` and every operation raises
    :class:`PreconditionError`. Handles cannot be copied or pickled.
    """

    _close_func = "ngt_close_index"

    def __init__(self, lib, handle, err: NativeErrorBuffer, path: str, properties: Properties):
        self._lib = lib
        self._handle = handle
        self._err = err
        self._path = path
        self._properties = properties
        self._space = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def properties(self) -> Properties:
        return self._properties

    @property
    def dimension(self) -> int:
        return self._properties.dimension

    @property
    def object_type(self) -> ObjectType:
        return self._properties.object_type

    @property
    def closed(self) -> bool:
        return self._handle is None

    def _require_open(self):
        if self._handle is None:
            raise PreconditionError(f"{type(self).__name__} at {self._path!r} is closed")
        return self._handle

    def get_vec(self, id: VecId) -> np.ndarray:
        """
        Return a copy of the stored vector ``id``.

        Raises:
            NotFoundError: If ``id`` was never assigned or has been removed
        """
        handle = self._require_open()
        id = _check_id(id)
        lib, err = self._lib, self._err

        if self._space is None:
            space = lib.ngt_get_object_space(handle, err.handle)
            err.raise_for_status(space, context="ngt_get_object_space")
            self._space = space

        dim = self.dimension
        object_type = self.object_type
        if object_type == ObjectType.FLOAT:
            ptr = lib.ngt_get_object_as_float(self._space, id, err.handle)
        elif object_type == ObjectType.UINT8:
            ptr = lib.ngt_get_object_as_integer(self._space, id, err.handle)
        else:
            _FFI.require("float16")
            ptr = lib.ngt_get_object_as_float16(self._space, id, err.handle)
        err.raise_for_status(ptr, ErrorCode.NOT_FOUND, f"get object {id}")

        vec = np.ctypeslib.as_array(ptr, shape=(dim,)).copy()
        if object_type == ObjectType.FLOAT16:
            vec = vec.view(np.float16)
        return vec

    def close(self) -> None:
        """Release the native handle. Safe to call more than once."""
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        self._space = None
        try:
            getattr(self._lib, self._close_func)(handle)
        finally:
            self._err.close()
        logger.debug(f"Closed {type(self).__name__} at {self._path!r}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        if getattr(self, "_handle", None) is not None:
            warnings.warn(
                f"Unclosed {type(self).__name__} at {self._path!r}",
                ResourceWarning,
                stacklevel=2,
            )
            self.close()

    def __copy__(self):
        raise TypeError(f"{type(self).__name__} owns a native handle and cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError(f"{type(self).__name__} owns a native handle and cannot be copied")

    def __reduce_ex__(self, protocol):
        raise TypeError(f"{type(self).__name__} owns a native handle and cannot be pickled")

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return (
            f"{type(self).__name__}(path={self._path!r}, dim={self.dimension}, "
            f"object_type={self.object_type.name}, {state})"
        )


# ============================================================================
# Index
# ============================================================================

class Index(_NativeIndex):
    """
    NGT graph-and-tree index stored in a directory.

    Obtain one with :meth:`create` or :meth:`open`. Inserted vectors are
    pending until :meth:`build` runs; only built vectors are searchable.

    The index adds no locking: callers must serialize ``insert``,
    ``remove``, ``build`` and ``persist``.
    """

    def __init__(self, lib, handle, err, path, properties, built: bool, pending: int = 0):
        super().__init__(lib, handle, err, path, properties)
        self._pending = pending
        self._built = built

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #

    @classmethod
    def create(cls, path, properties: Properties) -> "Index":
        """
        Create a new index at ``path`` and write its initial files.

        Raises:
            InvalidArgumentError: Invalid properties or malformed path
            IndexExistsError: ``path`` already exists and is not an empty directory
            IOFailureError: libngt could not create the index files
        """
        if not isinstance(properties, Properties):
            raise InvalidArgumentError(
                f"properties must be a Properties instance, got {type(properties).__name__}"
            )
        properties.validate()
        raw_path = encode_path(path)
        path = os.fsdecode(raw_path)
        if os.path.exists(path) and (not os.path.isdir(path) or os.listdir(path)):
            raise IndexExistsError(f"Path {path!r} already exists and is not empty")

        lib = _FFI.get_lib()
        err = NativeErrorBuffer(lib)
        try:
            with properties._to_native(lib, err) as prop:
                handle = lib.ngt_create_graph_and_tree(raw_path, prop, err.handle)
                err.raise_for_status(handle, ErrorCode.IO_FAILURE, f"create index at {path!r}")
        except BaseException:
            err.close()
            raise

        logger.info(f"Created NGT index at {path!r} ({properties.to_dict()})")
        return cls(lib, handle, err, path, properties, built=False)

    @classmethod
    def open(cls, path) -> "Index":
        """
        Open an existing index directory.

        Raises:
            NotFoundError: ``path`` is not a directory
            IOFailureError: libngt could not load the index files
        """
        raw_path = encode_path(path)
        path = os.fsdecode(raw_path)
        if not os.path.isdir(path):
            raise NotFoundError(f"No index directory at {path!r}")

        lib = _FFI.get_lib()
        err = NativeErrorBuffer(lib)
        handle = None
        try:
            handle = lib.ngt_open_index(raw_path, err.handle)
            err.raise_for_status(handle, ErrorCode.IO_FAILURE, f"open index at {path!r}")
            properties = Properties._from_index(lib, handle, err)
            pending = _count_pending(lib, handle, err)
        except BaseException:
            if handle:
                lib.ngt_close_index(handle)
            err.close()
            raise

        logger.info(f"Opened NGT index at {path!r} ({properties.to_dict()}, {pending} pending)")
        return cls(lib, handle, err, path, properties, built=True, pending=pending)

    def persist(self) -> None:
        """Write the built graph and metadata to :attr:`path`."""
        handle = self._require_open()
        t0 = time.perf_counter()
        ok = self._lib.ngt_save_index(handle, encode_path(self._path), self._err.handle)
        self._err.raise_for_status(ok, ErrorCode.IO_FAILURE, f"save index to {self._path!r}")
        logger.info(f"Persisted NGT index to {self._path!r} in {time.perf_counter() - t0:.3f}s")

    # ------------------------------------------------------------------ #
    # state
    # ------------------------------------------------------------------ #

    @property
    def pending(self) -> int:
        """Number of vectors inserted since the last build."""
        return self._pending

    @property
    def is_built(self) -> bool:
        """Whether the index has a searchable graph."""
        return self._built

    # ------------------------------------------------------------------ #
    # mutation
    # ------------------------------------------------------------------ #

    def insert(self, vector) -> VecId:
        """
        Insert a vector and return its id.

        The vector is not searchable until :meth:`build` runs.

        Args:
            vector: Sequence or 1-D numpy array of length ``dimension``

        Raises:
            DimensionMismatchError: Wrong length; the index is left untouched
        """
        handle = self._require_open()
        vec = _as_vectors(vector, self.dimension, self.object_type, 1)
        id = self._insert_native(handle, vec)
        self._pending += 1
        return id

    def _insert_native(self, handle, vec: np.ndarray) -> VecId:
        lib, err = self._lib, self._err
        object_type = self.object_type
        if object_type == ObjectType.FLOAT:
            id = lib.ngt_insert_index_as_float(
                handle, vec.ctypes.data_as(ctypes.POINTER(ctypes.c_float)),
                len(vec), err.handle)
        elif object_type == ObjectType.UINT8:
            _FFI.require("uint8_insert")
            id = lib.ngt_insert_index_as_uint8(
                handle, vec.ctypes.data_as(ctypes.POINTER(ctypes.c_uint8)),
                len(vec), err.handle)
        else:
            _FFI.require("float16")
            bits = vec.view(np.uint16)
            id = lib.ngt_insert_index_as_float16(
                handle, bits.ctypes.data_as(ctypes.POINTER(ctypes.c_uint16)),
                len(bits), err.handle)
        # 0 is NGT's "no object"
        err.raise_for_status(id, context="insert")
        return int(id)

    def insert_batch(self, vectors) -> None:
        """
        Insert many vectors without building.

        Float indexes append the whole ``(n, dimension)`` array in a single
        native call; other object types insert row by row. The batch is
        validated before anything is inserted.
        """
        handle = self._require_open()
        if isinstance(vectors, (list, tuple)) and not vectors:
            return
        arr = _as_vectors(vectors, self.dimension, self.object_type, 2)
        n = arr.shape[0]
        if n == 0:
            return

        if self.object_type == ObjectType.FLOAT and _FFI.features().batch_append:
            ok = self._lib.ngt_batch_append_index(
                handle, arr.ctypes.data_as(ctypes.POINTER(ctypes.c_float)),
                n, self._err.handle)
            self._err.raise_for_status(ok, context=f"append {n} vectors")
            self._pending += n
        else:
            for row in arr:
                self._insert_native(handle, np.ascontiguousarray(row))
                self._pending += 1
        logger.debug(f"Appended {n} vectors to {self._path!r}")

    def remove(self, id: VecId) -> None:
        """
        Remove vector ``id``; it disappears from searches and :meth:`get_vec`.

        Raises:
            NotFoundError: ``id`` is unknown or already removed
        """
        handle = self._require_open()
        id = _check_id(id)
        ok = self._lib.ngt_remove_index(handle, id, self._err.handle)
        self._err.raise_for_status(ok, ErrorCode.NOT_FOUND, f"remove object {id}")

    def build(self, num_threads: int) -> None:
        """
        Build the searchable graph from pending vectors.

        Blocks until libngt finishes; there is no cancellation.

        Raises:
            InvalidArgumentError: ``num_threads`` is not a positive integer
            PreconditionError: Nothing is pending
        """
        handle = self._require_open()
        if isinstance(num_threads, bool) or not isinstance(num_threads, (int, np.integer)) \
                or num_threads < 1:
            raise InvalidArgumentError(f"num_threads must be a positive integer, got {num_threads!r}")
        if self._pending == 0:
            raise PreconditionError("No pending vectors to build")

        cpus = os.cpu_count() or 1
        if num_threads > cpus:
            warnings.warn(
                f"build() with {num_threads} threads on {cpus} CPUs will oversubscribe",
                PerformanceWarning,
                stacklevel=2,
            )

        t0 = time.perf_counter()
        ok = self._lib.ngt_create_index(handle, int(num_threads), self._err.handle)
        self._err.raise_for_status(ok, context="build index")
        logger.info(
            f"Built {self._pending} vectors into {self._path!r} with {num_threads} "
            f"threads in {time.perf_counter() - t0:.3f}s"
        )
        self._pending = 0
        self._built = True

    # ------------------------------------------------------------------ #
    # query
    # ------------------------------------------------------------------ #

    def search(
        self,
        query,
        k: int = 10,
        epsilon: float = EPSILON,
        radius: Optional[float] = None,
    ) -> List[SearchResult]:
        """
        Search for the ``k`` nearest built vectors.

        Args:
            query: Vector of length ``dimension``
            k: Maximum number of results
            epsilon: Search expansion; larger explores more of the graph
            radius: Only return results within this distance (default: no limit)

        Returns:
            At most ``k`` results ordered by ascending distance
        """
        handle = self._require_open()
        if not self._built:
            raise PreconditionError("Index has not been built; call build() first")
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
            raise InvalidArgumentError(f"k must be a positive integer, got {k!r}")
        epsilon = float(epsilon)
        if not math.isfinite(epsilon) or epsilon <= -1.0:
            raise InvalidArgumentError(f"epsilon must be a finite number > -1, got {epsilon}")
        if radius is None:
            radius = -1.0  # NGT: negative means unbounded
        elif not radius >= 0:
            raise InvalidArgumentError(f"radius must be non-negative, got {radius}")

        q = _as_query(query, self.dimension)
        lib, err = self._lib, self._err
        results = lib.ngt_create_empty_results(err.handle)
        err.raise_for_status(results, context="ngt_create_empty_results")
        try:
            ok = lib.ngt_search_index_as_float(
                handle,
                q.ctypes.data_as(ctypes.POINTER(ctypes.c_float)),
                self.dimension,
                int(k),
                epsilon,
                float(radius),
                results,
                err.handle,
            )
            err.raise_for_status(ok, context="search")
            return _collect_results(lib, results, err)
        finally:
            lib.ngt_destroy_results(results)
