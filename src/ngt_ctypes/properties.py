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
Index properties.

Example:
    # Default properties with vectors of dimension 3
    prop = Properties.with_dimension(3)

    # Or customize values (here are the defaults)
    prop = (
        Properties.with_dimension(3)
        .with_creation_edge_size(10)
        .with_search_edge_size(40)
        .with_object_type(ObjectType.FLOAT)
        .with_distance_type(DistanceType.L2)
    )

Nothing here talks to libngt until the properties are handed to
``Index.create``.
"""

from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Dict, Iterator, Union

import numpy as np

from ._ffi import _FFI
from .errors import (
    ErrorCode,
    InvalidArgumentError,
    NativeError,
    NativeErrorBuffer,
    NotSupportedError,
)

_MAX_DIMENSION = 2 ** 31 - 1
_MAX_EDGE_SIZE = 2 ** 15 - 1


# ============================================================================
# Enumerations
# ============================================================================

class ObjectType(IntEnum):
    """Element type of stored vectors."""
    UINT8 = 1
    FLOAT = 2
    FLOAT16 = 3

    @property
    def dtype(self) -> np.dtype:
        return np.dtype({
            ObjectType.UINT8: np.uint8,
            ObjectType.FLOAT: np.float32,
            ObjectType.FLOAT16: np.float16,
        }[self])


class DistanceType(IntEnum):
    """Distance function used by the index."""
    L1 = 0
    L2 = 1
    HAMMING = 2
    ANGLE = 3
    COSINE = 4
    NORMALIZED_ANGLE = 5
    NORMALIZED_COSINE = 6
    JACCARD = 7


_DISTANCE_SETTERS = {
    DistanceType.L1: "ngt_set_property_distance_type_l1",
    DistanceType.L2: "ngt_set_property_distance_type_l2",
    DistanceType.HAMMING: "ngt_set_property_distance_type_hamming",
    DistanceType.ANGLE: "ngt_set_property_distance_type_angle",
    DistanceType.COSINE: "ngt_set_property_distance_type_cosine",
    DistanceType.NORMALIZED_ANGLE: "ngt_set_property_distance_type_normalized_angle",
    DistanceType.NORMALIZED_COSINE: "ngt_set_property_distance_type_normalized_cosine",
    DistanceType.JACCARD: "ngt_set_property_distance_type_jaccard",
}

# distances defined on bit/set representations only
_UINT8_ONLY = frozenset({DistanceType.HAMMING, DistanceType.JACCARD})
_FLOAT_ONLY = frozenset({DistanceType.NORMALIZED_ANGLE, DistanceType.NORMALIZED_COSINE})


def _coerce_enum(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls[value.strip().upper()]
        except KeyError:
            pass
    elif isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        try:
            return enum_cls(int(value))
        except ValueError:
            pass
    choices = ", ".join(m.name for m in enum_cls)
    raise InvalidArgumentError(f"Invalid {what} {value!r}; expected one of {choices}")


def _check_int(value, what: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise InvalidArgumentError(f"{what} must be an integer, got {value!r}")
    value = int(value)
    if not low <= value <= high:
        raise InvalidArgumentError(f"{what} must be in [{low}, {high}], got {value}")
    return value


# ============================================================================
# Properties
# ============================================================================

@dataclass(frozen=True)
class Properties:
    """
    Configuration of a new index.

    Instances are immutable: every ``with_*`` method validates its argument
    and returns an updated copy, so calls can be chained.
    """

    dimension: int
    creation_edge_size: int = 10
    search_edge_size: int = 40
    object_type: ObjectType = ObjectType.FLOAT
    distance_type: DistanceType = DistanceType.L2

    def __post_init__(self):
        object.__setattr__(self, "dimension",
                           _check_int(self.dimension, "dimension", 1, _MAX_DIMENSION))
        object.__setattr__(self, "creation_edge_size",
                           _check_int(self.creation_edge_size, "creation_edge_size",
                                      1, _MAX_EDGE_SIZE))
        object.__setattr__(self, "search_edge_size",
                           _check_int(self.search_edge_size, "search_edge_size",
                                      1, _MAX_EDGE_SIZE))
        object.__setattr__(self, "object_type",
                           _coerce_enum(ObjectType, self.object_type, "object type"))
        object.__setattr__(self, "distance_type",
                           _coerce_enum(DistanceType, self.distance_type, "distance type"))

    @classmethod
    def with_dimension(cls, dimension: int) -> "Properties":
        """Default properties for vectors of the given dimension."""
        return cls(dimension=dimension)

    def with_creation_edge_size(self, size: int) -> "Properties":
        return replace(self, creation_edge_size=size)

    def with_search_edge_size(self, size: int) -> "Properties":
        return replace(self, search_edge_size=size)

    def with_object_type(self, object_type: Union[ObjectType, int, str]) -> "Properties":
        return replace(self, object_type=object_type)

    def with_distance_type(self, distance_type: Union[DistanceType, int, str]) -> "Properties":
        return replace(self, distance_type=distance_type)

    def validate(self) -> "Properties":
        """Check that libngt supports this object/distance type combination."""
        if self.distance_type in _UINT8_ONLY and self.object_type != ObjectType.UINT8:
            raise InvalidArgumentError(
                f"{self.distance_type.name} distance requires UINT8 objects, "
                f"got {self.object_type.name}"
            )
        if self.distance_type in _FLOAT_ONLY and self.object_type == ObjectType.UINT8:
            raise InvalidArgumentError(
                f"{self.distance_type.name} distance requires floating point objects"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dimension": self.dimension,
            "creation_edge_size": self.creation_edge_size,
            "search_edge_size": self.search_edge_size,
            "object_type": self.object_type.name,
            "distance_type": self.distance_type.name,
        }

    # ------------------------------------------------------------------ #
    # native conversion
    # ------------------------------------------------------------------ #

    @contextmanager
    def _to_native(self, lib, err: NativeErrorBuffer) -> Iterator[Any]:
        """Yield an ``NGTProperty`` configured from this record."""
        self.validate()
        prop = lib.ngt_create_property(err.handle)
        err.raise_for_status(prop, context="ngt_create_property")
        try:
            err.raise_for_status(
                lib.ngt_set_property_dimension(prop, self.dimension, err.handle),
                ErrorCode.INVALID_ARGUMENT, "set dimension")
            err.raise_for_status(
                lib.ngt_set_property_edge_size_for_creation(
                    prop, self.creation_edge_size, err.handle),
                ErrorCode.INVALID_ARGUMENT, "set creation edge size")
            err.raise_for_status(
                lib.ngt_set_property_edge_size_for_search(
                    prop, self.search_edge_size, err.handle),
                ErrorCode.INVALID_ARGUMENT, "set search edge size")

            if self.object_type == ObjectType.FLOAT:
                ok = lib.ngt_set_property_object_type_float(prop, err.handle)
            elif self.object_type == ObjectType.UINT8:
                ok = lib.ngt_set_property_object_type_integer(prop, err.handle)
            else:
                _FFI.require("float16")
                ok = lib.ngt_set_property_object_type_float16(prop, err.handle)
            err.raise_for_status(ok, ErrorCode.INVALID_ARGUMENT, "set object type")

            setter = getattr(lib, _DISTANCE_SETTERS[self.distance_type])
            err.raise_for_status(setter(prop, err.handle),
                                 ErrorCode.INVALID_ARGUMENT, "set distance type")
            yield prop
        finally:
            lib.ngt_destroy_property(prop)

    @classmethod
    def _from_index(cls, lib, index_handle, err: NativeErrorBuffer) -> "Properties":
        """Read back the properties of an open native index."""
        prop = lib.ngt_create_property(err.handle)
        err.raise_for_status(prop, context="ngt_create_property")
        try:
            err.raise_for_status(lib.ngt_get_property(index_handle, prop, err.handle),
                                 context="ngt_get_property")
            dimension = lib.ngt_get_property_dimension(prop, err.handle)
            creation = lib.ngt_get_property_edge_size_for_creation(prop, err.handle)
            search = lib.ngt_get_property_edge_size_for_search(prop, err.handle)
            raw_object = lib.ngt_get_property_object_type(prop, err.handle)
            raw_distance = lib.ngt_get_property_distance_type(prop, err.handle)
        finally:
            lib.ngt_destroy_property(prop)

        if lib.ngt_is_property_object_type_float(raw_object):
            object_type = ObjectType.FLOAT
        elif lib.ngt_is_property_object_type_integer(raw_object):
            object_type = ObjectType.UINT8
        elif _FFI.features().float16 and lib.ngt_is_property_object_type_float16(raw_object):
            object_type = ObjectType.FLOAT16
        else:
            raise NativeError(f"Index has an unknown object type ({raw_object})")

        try:
            distance_type = DistanceType(raw_distance)
        except ValueError:
            raise NotSupportedError(
                f"Index uses distance type {raw_distance}, which these bindings do not expose"
            ) from None

        return cls(
            dimension=dimension,
            creation_edge_size=creation,
            search_edge_size=search,
            object_type=object_type,
            distance_type=distance_type,
        )
