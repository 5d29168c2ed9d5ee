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
Low-level ctypes bindings to the NGT C API.

This module is internal. It finds ``libngt``, loads it once per process and
declares the signature of every entry point used by the high-level classes in
``index.py``, ``qg.py`` and ``optim.py``.
"""

import os
import ctypes
import ctypes.util
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from .errors import InvalidArgumentError, NotSupportedError

logger = logging.getLogger(__name__)


class PerformanceWarning(UserWarning):
    """Warning for performance-degrading conditions."""
    pass


def _env_flag(name: str, default: bool = True) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value not in ("0", "false", "False", "no", "")


def _get_platform_candidates() -> List[str]:
    """Get list of potential platform directory names."""
    import platform as plat
    system = plat.system().lower()
    machine = plat.machine().lower()

    # Normalize machine names
    if machine in ("x86_64", "amd64"):
        machine = "x86_64"
    elif machine in ("arm64", "aarch64"):
        machine = "aarch64"

    candidates = [f"{system}-{machine}"]

    if system == "darwin":
        candidates.append(f"{machine}-apple-darwin")
    elif system == "linux":
        candidates.append(f"{machine}-unknown-linux-gnu")
    elif system == "windows":
        candidates.append(f"{machine}-pc-windows-msvc")

    return candidates


def _library_name() -> str:
    if os.name == "nt":
        return "ngt.dll"
    if os.uname().sysname == "Darwin":
        return "libngt.dylib"
    return "libngt.so"


def _find_library() -> Optional[str]:
    """Find the NGT shared library.

    Search order:
    1. NGT_LIB_PATH environment variable (file or directory)
    2. Bundled library in wheel (lib/{platform}/, lib/)
    3. Package directory
    4. System paths
    5. ctypes.util.find_library
    """
    lib_name = _library_name()
    pkg_dir = os.path.dirname(__file__)

    env_path = os.environ.get("NGT_LIB_PATH")
    if env_path:
        if os.path.isfile(env_path):
            return env_path
        full_path = os.path.join(env_path, lib_name)
        if os.path.exists(full_path):
            return full_path
        logger.warning(f"NGT_LIB_PATH={env_path!r} does not contain {lib_name}")

    search_paths = []
    for platform_dir in _get_platform_candidates():
        search_paths.append(os.path.join(pkg_dir, "lib", platform_dir))
    search_paths.append(os.path.join(pkg_dir, "lib"))
    search_paths.append(pkg_dir)
    search_paths.extend([
        "/usr/local/lib",
        "/usr/local/lib64",
        "/usr/lib",
        "/usr/lib64",
        "/opt/homebrew/lib",  # macOS Apple Silicon Homebrew
        "/opt/local/lib",      # MacPorts
        os.path.expanduser("~/.ngt/lib"),
    ])

    for path in search_paths:
        full_path = os.path.join(path, lib_name)
        if os.path.exists(full_path):
            return full_path

    return ctypes.util.find_library("ngt")


def _preload_openmp() -> None:
    """Make the OpenMP runtime globally visible before libngt is loaded.

    A statically linked libngt is built without OpenMP, so a missing runtime
    is not an error.
    """
    if not _env_flag("NGT_PRELOAD_OPENMP"):
        return
    for name in ("gomp", "omp", "iomp5"):
        path = ctypes.util.find_library(name)
        if path is None:
            continue
        try:
            ctypes.CDLL(path, mode=ctypes.RTLD_GLOBAL)
        except OSError as e:
            logger.debug(f"Could not preload OpenMP runtime {path}: {e}")
            continue
        logger.debug(f"Preloaded OpenMP runtime {path}")
        return
    logger.debug("No OpenMP runtime found; assuming a statically linked libngt")


def encode_path(path) -> bytes:
    """Marshal a filesystem path into the NUL-terminated bytes NGT expects."""
    try:
        raw = os.fsencode(os.fspath(path))
    except TypeError:
        raise InvalidArgumentError(f"Invalid index path: {path!r}") from None
    if not raw or b"\0" in raw:
        raise InvalidArgumentError(f"Invalid index path: {path!r}")
    return raw


# =============================================================================
# C structures
# =============================================================================

class ObjectDistance(ctypes.Structure):
    _fields_ = [
        ("id", ctypes.c_uint32),
        ("distance", ctypes.c_float),
    ]


class QGQueryStruct(ctypes.Structure):
    _fields_ = [
        ("query", ctypes.POINTER(ctypes.c_float)),
        ("size", ctypes.c_size_t),
        ("epsilon", ctypes.c_float),
        ("result_expansion", ctypes.c_float),
        ("radius", ctypes.c_float),
    ]


class QGQuantizationParameters(ctypes.Structure):
    _fields_ = [
        ("dimension_of_subvector", ctypes.c_float),
        ("max_number_of_edges", ctypes.c_size_t),
    ]


class AnngEdgeOptimizationParameter(ctypes.Structure):
    _fields_ = [
        ("no_of_queries", ctypes.c_size_t),
        ("no_of_results", ctypes.c_size_t),
        ("no_of_threads", ctypes.c_int),
        ("target_accuracy", ctypes.c_float),
        ("target_no_of_objects", ctypes.c_int),
        ("no_of_sample_objects", ctypes.c_size_t),
        ("max_of_no_of_edges", ctypes.c_size_t),
        ("log", ctypes.c_bool),
    ]


# =============================================================================
# Signatures
# =============================================================================

_p = ctypes.c_void_p
_FLOAT_P = ctypes.POINTER(ctypes.c_float)
_UINT8_P = ctypes.POINTER(ctypes.c_uint8)
_UINT16_P = ctypes.POINTER(ctypes.c_uint16)

# (name, argtypes, restype); every one of these must be exported
_REQUIRED = [
    # error object
    ("ngt_create_error_object", [], _p),
    ("ngt_get_error_string", [_p], ctypes.c_char_p),
    ("ngt_clear_error_string", [_p], None),
    ("ngt_destroy_error_object", [_p], None),
    # property
    ("ngt_create_property", [_p], _p),
    ("ngt_destroy_property", [_p], None),
    ("ngt_get_property", [_p, _p, _p], ctypes.c_bool),
    ("ngt_set_property_dimension", [_p, ctypes.c_int32, _p], ctypes.c_bool),
    ("ngt_set_property_edge_size_for_creation", [_p, ctypes.c_int16, _p], ctypes.c_bool),
    ("ngt_set_property_edge_size_for_search", [_p, ctypes.c_int16, _p], ctypes.c_bool),
    ("ngt_get_property_dimension", [_p, _p], ctypes.c_int32),
    ("ngt_get_property_edge_size_for_creation", [_p, _p], ctypes.c_int16),
    ("ngt_get_property_edge_size_for_search", [_p, _p], ctypes.c_int16),
    ("ngt_get_property_object_type", [_p, _p], ctypes.c_int32),
    ("ngt_get_property_distance_type", [_p, _p], ctypes.c_int32),
    ("ngt_is_property_object_type_float", [ctypes.c_int32], ctypes.c_bool),
    ("ngt_is_property_object_type_integer", [ctypes.c_int32], ctypes.c_bool),
    ("ngt_set_property_object_type_float", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_object_type_integer", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_l1", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_l2", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_hamming", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_angle", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_cosine", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_normalized_angle", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_normalized_cosine", [_p, _p], ctypes.c_bool),
    ("ngt_set_property_distance_type_jaccard", [_p, _p], ctypes.c_bool),
    # index lifecycle
    ("ngt_create_graph_and_tree", [ctypes.c_char_p, _p, _p], _p),
    ("ngt_open_index", [ctypes.c_char_p, _p], _p),
    ("ngt_save_index", [_p, ctypes.c_char_p, _p], ctypes.c_bool),
    ("ngt_close_index", [_p], None),
    # mutation
    ("ngt_insert_index_as_float", [_p, _FLOAT_P, ctypes.c_uint32, _p], ctypes.c_uint32),
    ("ngt_create_index", [_p, ctypes.c_uint32, _p], ctypes.c_bool),
    ("ngt_remove_index", [_p, ctypes.c_uint32, _p], ctypes.c_bool),
    ("ngt_get_number_of_objects", [_p, _p], ctypes.c_uint32),
    ("ngt_get_number_of_indexed_objects", [_p, _p], ctypes.c_uint32),
    # objects
    ("ngt_get_object_space", [_p, _p], _p),
    ("ngt_get_object_as_float", [_p, ctypes.c_uint32, _p], _FLOAT_P),
    ("ngt_get_object_as_integer", [_p, ctypes.c_uint32, _p], _UINT8_P),
    # search
    ("ngt_create_empty_results", [_p], _p),
    ("ngt_search_index_as_float", [
        _p,                  # index
        _FLOAT_P,            # query
        ctypes.c_int32,      # dimension
        ctypes.c_size_t,     # result size
        ctypes.c_float,      # epsilon
        ctypes.c_float,      # radius
        _p,                  # results
        _p,                  # error
    ], ctypes.c_bool),
    ("ngt_get_result_size", [_p, _p], ctypes.c_uint32),
    ("ngt_get_result", [_p, ctypes.c_uint32, _p], ObjectDistance),
    ("ngt_destroy_results", [_p], None),
]

# feature name -> entry points; a feature is available only if all load
_OPTIONAL = {
    "float16": [
        ("ngt_set_property_object_type_float16", [_p, _p], ctypes.c_bool),
        ("ngt_is_property_object_type_float16", [ctypes.c_int32], ctypes.c_bool),
        ("ngt_insert_index_as_float16", [_p, _UINT16_P, ctypes.c_uint32, _p], ctypes.c_uint32),
        ("ngt_get_object_as_float16", [_p, ctypes.c_uint32, _p], _UINT16_P),
    ],
    "uint8_insert": [
        ("ngt_insert_index_as_uint8", [_p, _UINT8_P, ctypes.c_uint32, _p], ctypes.c_uint32),
    ],
    "batch_append": [
        ("ngt_batch_append_index", [_p, _FLOAT_P, ctypes.c_uint32, _p], ctypes.c_bool),
    ],
    "refine": [
        ("ngt_refine_anng", [
            _p, ctypes.c_float, ctypes.c_float, ctypes.c_int, ctypes.c_int,
            ctypes.c_size_t, _p,
        ], ctypes.c_bool),
        ("ngt_optimize_number_of_edges",
         [ctypes.c_char_p, AnngEdgeOptimizationParameter, _p], ctypes.c_bool),
    ],
    "optimizer": [
        ("ngt_create_optimizer", [ctypes.c_bool, _p], _p),
        ("ngt_optimizer_set", [
            _p,
            ctypes.c_int, ctypes.c_int, ctypes.c_int,        # outgoing, incoming, queries
            ctypes.c_float, ctypes.c_float,                  # base accuracy from/to
            ctypes.c_float, ctypes.c_float,                  # rate accuracy from/to
            ctypes.c_double, ctypes.c_double,                # gt epsilon, merge
            _p,
        ], ctypes.c_bool),
        ("ngt_optimizer_adjust_search_coefficients", [_p, ctypes.c_char_p, _p], ctypes.c_bool),
        ("ngt_optimizer_execute", [_p, ctypes.c_char_p, ctypes.c_char_p, _p], ctypes.c_bool),
        ("ngt_destroy_optimizer", [_p], None),
    ],
    # absent from shared-memory builds
    "qg": [
        ("ngtqg_quantize", [ctypes.c_char_p, QGQuantizationParameters, _p], ctypes.c_bool),
        ("ngtqg_open_index", [ctypes.c_char_p, _p], _p),
        ("ngtqg_close_index", [_p], None),
        ("ngtqg_search_index", [_p, QGQueryStruct, _p, _p], ctypes.c_bool),
    ],
}


@dataclass(frozen=True)
class NativeFeatures:
    """Optional capabilities of the loaded libngt."""
    float16: bool = False
    uint8_insert: bool = False
    batch_append: bool = False
    refine: bool = False
    optimizer: bool = False
    qg: bool = False


class _FFI:
    """FFI bindings to the NGT library.

    The library is process-wide state: it is loaded once, on first use, and
    never unloaded.
    """
    _lib = None
    _features: Optional[NativeFeatures] = None
    _lock = threading.Lock()

    @classmethod
    def get_lib(cls):
        if cls._lib is None:
            with cls._lock:
                if cls._lib is None:
                    path = _find_library()
                    if path is None:
                        raise ImportError(
                            "Could not find libngt. "
                            "Build and install NGT from https://github.com/yahoojapan/NGT "
                            "(cmake .. && make && make install), "
                            "or set the NGT_LIB_PATH environment variable."
                        )
                    _preload_openmp()
                    lib = ctypes.CDLL(path)
                    cls._setup_bindings(lib)
                    logger.debug(f"Loaded NGT library from {path}")
                    cls._lib = lib
        return cls._lib

    @classmethod
    def _setup_bindings(cls, lib):
        for name, argtypes, restype in _REQUIRED:
            func = getattr(lib, name)
            func.argtypes = argtypes
            func.restype = restype

        available = {}
        for feature, entries in _OPTIONAL.items():
            try:
                for name, argtypes, restype in entries:
                    func = getattr(lib, name)
                    func.argtypes = argtypes
                    func.restype = restype
            except AttributeError as e:
                logger.debug(f"NGT feature {feature!r} unavailable: {e}")
                available[feature] = False
            else:
                available[feature] = True
        cls._features = NativeFeatures(**available)

    @classmethod
    def features(cls) -> NativeFeatures:
        lib = cls.get_lib()
        if cls._features is None:
            # library injected without going through _setup_bindings
            cls._features = NativeFeatures(**{
                feature: all(hasattr(lib, name) for name, _, _ in entries)
                for feature, entries in _OPTIONAL.items()
            })
        return cls._features

    @classmethod
    def require(cls, feature: str):
        """Return the library, or raise if it was built without ``feature``."""
        lib = cls.get_lib()
        if not getattr(cls.features(), feature):
            raise NotSupportedError(
                f"The loaded NGT library does not provide the {feature!r} feature"
            )
        return lib


def features() -> NativeFeatures:
    """Report which optional NGT capabilities the loaded library exposes."""
    return _FFI.features()
