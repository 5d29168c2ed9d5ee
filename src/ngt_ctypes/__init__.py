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
ctypes bindings for NGT

Python access to NGT (https://github.com/yahoojapan/NGT), which provides
high-speed approximate nearest neighbor search over large volumes of vectors.

libngt must be installed, or pointed to with the NGT_LIB_PATH environment
variable. It is loaded on first use together with its OpenMP runtime.

Quick Start:
    >>> from ngt_ctypes import Index, Properties, EPSILON
    >>> prop = Properties.with_dimension(3)
    >>> index = Index.create("path/to/index", prop)
    >>> id1 = index.insert([1.0, 2.0, 3.0])
    >>> id2 = index.insert([4.0, 5.0, 6.0])
    >>> index.build(2)
    >>> index.search([1.1, 2.1, 3.1], 1, EPSILON)[0].id == id1
    True
    >>> index.remove(id1)
    >>> index.search([1.1, 2.1, 3.1], 1, EPSILON)[0].id == id2
    True
    >>> index.persist()
    >>> index.close()
"""

from . import optim
from ._ffi import NativeFeatures, PerformanceWarning, features
from .errors import (
    DimensionMismatchError,
    ErrorCode,
    IndexExistsError,
    InvalidArgumentError,
    IOFailureError,
    NativeError,
    NgtError,
    NotFoundError,
    NotSupportedError,
    PreconditionError,
    UnrecognizedError,
)
from .index import EPSILON, Index, SearchResult, VecId
from .properties import DistanceType, ObjectType, Properties
from .qg import QGIndex, QGQuantizationParams, QGQuery

__version__ = "0.1.0"

__all__ = [
    # Index
    "Index",
    "SearchResult",
    "VecId",
    "EPSILON",
    # Properties
    "Properties",
    "ObjectType",
    "DistanceType",
    # Quantized graph
    "QGIndex",
    "QGQuery",
    "QGQuantizationParams",
    # Maintenance
    "optim",
    # Native library
    "features",
    "NativeFeatures",
    "PerformanceWarning",
    # Errors
    "ErrorCode",
    "NgtError",
    "InvalidArgumentError",
    "DimensionMismatchError",
    "NotFoundError",
    "IOFailureError",
    "IndexExistsError",
    "NativeError",
    "PreconditionError",
    "NotSupportedError",
    "UnrecognizedError",
]
