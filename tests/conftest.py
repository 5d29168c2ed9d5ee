"""
Pytest configuration and shared fixtures for the NGT bindings.

Most tests run against ``FakeNGT``, a small in-process stand-in for the NGT C
API that receives the same ctypes arguments the real library would (pointers
into numpy buffers, structs by value, NUL-terminated byte paths) and keeps its
"index files" as JSON. Brute-force search stands in for graph search, which is
exact on the tiny data sets used here.
"""

import ctypes
import json
import os
import shutil

import numpy as np
import pytest

from ngt_ctypes._ffi import ObjectDistance, _FFI

_STATE_FILE = "fake_ngt.json"

_RAW_UINT8, _RAW_FLOAT, _RAW_FLOAT16 = 1, 2, 3
_DTYPES = {_RAW_UINT8: np.uint8, _RAW_FLOAT: np.float32, _RAW_FLOAT16: np.float16}
_POINTERS = {
    _RAW_UINT8: ctypes.POINTER(ctypes.c_uint8),
    _RAW_FLOAT: ctypes.POINTER(ctypes.c_float),
    _RAW_FLOAT16: ctypes.POINTER(ctypes.c_uint16),
}


class _Err:
    def __init__(self):
        self.message = ""


class _Prop:
    def __init__(self):
        self.dimension = 0
        self.creation = 10
        self.search = 40
        self.object_type = _RAW_FLOAT
        self.distance = 1


class _Idx:
    def __init__(self, path, prop):
        self.path = path
        self.prop = prop
        self.objects = {}
        self.built = set()
        self.pending = []
        self.next_id = 1
        self.quantized = False
        self.closed = False

    @property
    def dtype(self):
        return _DTYPES[self.prop.object_type]

    def add(self, values):
        id = self.next_id
        self.next_id += 1
        self.objects[id] = np.array(values, dtype=self.dtype)
        self.pending.append(id)
        return id

    def state(self):
        return {
            "prop": vars(self.prop),
            "objects": {str(k): [float(x) for x in v] for k, v in self.objects.items()},
            "built": sorted(self.built),
            "pending": list(self.pending),
            "next_id": self.next_id,
            "quantized": self.quantized,
        }

    @classmethod
    def from_state(cls, path, state):
        prop = _Prop()
        for key, value in state["prop"].items():
            setattr(prop, key, value)
        idx = cls(path, prop)
        idx.objects = {int(k): np.array(v, dtype=idx.dtype) for k, v in state["objects"].items()}
        idx.built = set(state["built"])
        idx.pending = list(state["pending"])
        idx.next_id = state["next_id"]
        idx.quantized = state["quantized"]
        return idx

    def save(self, path):
        with open(os.path.join(path, _STATE_FILE), "w") as f:
            json.dump(self.state(), f, sort_keys=True)

    def nearest(self, query, size, radius):
        out = []
        for id in sorted(self.built):
            vec = self.objects[id].astype(np.float64)
            if self.prop.distance == 0:
                d = float(np.abs(vec - query).sum())
            elif self.prop.distance in (3, 4):
                denom = np.linalg.norm(vec) * np.linalg.norm(query)
                cos = float(vec @ query / denom) if denom else 0.0
                d = 1.0 - cos
            else:
                d = float(np.sqrt(((vec - query) ** 2).sum()))
            if radius < 0 or d <= radius:
                out.append((d, id))
        out.sort()
        return out[:size]


class _Space:
    def __init__(self, idx):
        self.idx = idx
        self.keep = {}


class _Results:
    def __init__(self):
        self.items = []


class _Optimizer:
    def __init__(self, log_disabled):
        self.log_disabled = log_disabled
        self.settings = None


class FakeNGT:
    """In-process implementation of the subset of the NGT C API we bind."""

    def __init__(self, missing=()):
        self.missing = frozenset(missing)
        self.errors_live = 0
        self.properties_live = 0
        self.results_live = 0
        self.indexes_live = 0
        self.close_calls = 0
        self.calls = []

    def __getattribute__(self, name):
        if name.startswith("ngt") and name in object.__getattribute__(self, "missing"):
            raise AttributeError(name)
        return object.__getattribute__(self, name)

    def leaks(self):
        return {
            "errors": self.errors_live,
            "properties": self.properties_live,
            "results": self.results_live,
            "indexes": self.indexes_live,
        }

    @staticmethod
    def _fail(err, message):
        err.message = message
        return False

    # -- error object --------------------------------------------------- #

    def ngt_create_error_object(self):
        self.errors_live += 1
        return _Err()

    def ngt_get_error_string(self, err):
        return err.message.encode()

    def ngt_clear_error_string(self, err):
        err.message = ""

    def ngt_destroy_error_object(self, err):
        self.errors_live -= 1

    # -- property ------------------------------------------------------- #

    def ngt_create_property(self, err):
        self.properties_live += 1
        return _Prop()

    def ngt_destroy_property(self, prop):
        self.properties_live -= 1

    def ngt_get_property(self, idx, prop, err):
        for key, value in vars(idx.prop).items():
            setattr(prop, key, value)
        return True

    def ngt_set_property_dimension(self, prop, value, err):
        if value <= 0:
            return self._fail(err, "NGT::Property: Invalid dimension")
        prop.dimension = value
        return True

    def ngt_set_property_edge_size_for_creation(self, prop, value, err):
        prop.creation = value
        return True

    def ngt_set_property_edge_size_for_search(self, prop, value, err):
        prop.search = value
        return True

    def ngt_get_property_dimension(self, prop, err):
        return prop.dimension

    def ngt_get_property_edge_size_for_creation(self, prop, err):
        return prop.creation

    def ngt_get_property_edge_size_for_search(self, prop, err):
        return prop.search

    def ngt_get_property_object_type(self, prop, err):
        return prop.object_type

    def ngt_get_property_distance_type(self, prop, err):
        return prop.distance

    def ngt_is_property_object_type_float(self, raw):
        return raw == _RAW_FLOAT

    def ngt_is_property_object_type_integer(self, raw):
        return raw == _RAW_UINT8

    def ngt_is_property_object_type_float16(self, raw):
        return raw == _RAW_FLOAT16

    def ngt_set_property_object_type_float(self, prop, err):
        prop.object_type = _RAW_FLOAT
        return True

    def ngt_set_property_object_type_integer(self, prop, err):
        prop.object_type = _RAW_UINT8
        return True

    def ngt_set_property_object_type_float16(self, prop, err):
        prop.object_type = _RAW_FLOAT16
        return True

    def _set_distance(self, prop, value):
        prop.distance = value
        return True

    def ngt_set_property_distance_type_l1(self, prop, err):
        return self._set_distance(prop, 0)

    def ngt_set_property_distance_type_l2(self, prop, err):
        return self._set_distance(prop, 1)

    def ngt_set_property_distance_type_hamming(self, prop, err):
        return self._set_distance(prop, 2)

    def ngt_set_property_distance_type_angle(self, prop, err):
        return self._set_distance(prop, 3)

    def ngt_set_property_distance_type_cosine(self, prop, err):
        return self._set_distance(prop, 4)

    def ngt_set_property_distance_type_normalized_angle(self, prop, err):
        return self._set_distance(prop, 5)

    def ngt_set_property_distance_type_normalized_cosine(self, prop, err):
        return self._set_distance(prop, 6)

    def ngt_set_property_distance_type_jaccard(self, prop, err):
        return self._set_distance(prop, 7)

    # -- index lifecycle ------------------------------------------------ #

    def ngt_create_graph_and_tree(self, path, prop, err):
        path = path.decode()
        if os.path.exists(path) and os.listdir(path):
            self._fail(err, f"Cannot make the specified directory. {path}")
            return None
        os.makedirs(path, exist_ok=True)
        copy = _Prop()
        for key, value in vars(prop).items():
            setattr(copy, key, value)
        idx = _Idx(path, copy)
        idx.save(path)
        self.indexes_live += 1
        return idx

    def _load(self, path, err):
        state_file = os.path.join(path, _STATE_FILE)
        if not os.path.exists(state_file):
            self._fail(err, f"Cannot open the specified file. {state_file}")
            return None
        with open(state_file) as f:
            return _Idx.from_state(path, json.load(f))

    def ngt_open_index(self, path, err):
        idx = self._load(path.decode(), err)
        if idx is not None:
            self.indexes_live += 1
        return idx

    def ngt_save_index(self, idx, path, err):
        path = path.decode()
        if not os.path.isdir(path):
            return self._fail(err, f"Cannot open the specified file. {path}")
        idx.save(path)
        return True

    def ngt_close_index(self, idx):
        idx.closed = True
        self.indexes_live -= 1
        self.close_calls += 1

    # -- mutation ------------------------------------------------------- #

    def _insert(self, idx, ptr, dim, raw, err):
        if dim != idx.prop.dimension:
            self._fail(err, "Dimension is not proper")
            return 0
        values = np.ctypeslib.as_array(ptr, shape=(dim,)).copy()
        if raw == _RAW_FLOAT16:
            values = values.view(np.float16)
        self.calls.append(("insert", dim))
        return idx.add(values)

    def ngt_insert_index_as_float(self, idx, ptr, dim, err):
        return self._insert(idx, ptr, dim, _RAW_FLOAT, err)

    def ngt_insert_index_as_uint8(self, idx, ptr, dim, err):
        return self._insert(idx, ptr, dim, _RAW_UINT8, err)

    def ngt_insert_index_as_float16(self, idx, ptr, dim, err):
        return self._insert(idx, ptr, dim, _RAW_FLOAT16, err)

    def ngt_batch_append_index(self, idx, ptr, num, err):
        dim = idx.prop.dimension
        data = np.ctypeslib.as_array(ptr, shape=(num * dim,)).reshape(num, dim)
        self.calls.append(("batch_append", num))
        for row in data:
            idx.add(row)
        return True

    def ngt_create_index(self, idx, pool_size, err):
        self.calls.append(("build", pool_size))
        idx.built.update(idx.pending)
        idx.pending = []
        return True

    def ngt_remove_index(self, idx, id, err):
        if id not in idx.objects:
            return self._fail(err, f"Not found the specified id. {id}")
        del idx.objects[id]
        idx.built.discard(id)
        if id in idx.pending:
            idx.pending.remove(id)
        return True

    def ngt_get_number_of_objects(self, idx, err):
        return len(idx.objects)

    def ngt_get_number_of_indexed_objects(self, idx, err):
        return len(idx.built)

    # -- objects -------------------------------------------------------- #

    def ngt_get_object_space(self, idx, err):
        return _Space(idx)

    def _get_object(self, space, id, raw, err):
        idx = space.idx
        vec = idx.objects.get(id)
        if vec is None:
            self._fail(err, f"ObjectSpace::getObject: invalid id {id}")
            return _POINTERS[raw]()
        buf = np.ascontiguousarray(vec)
        if raw == _RAW_FLOAT16:
            buf = buf.view(np.uint16)
        space.keep[id] = buf
        return buf.ctypes.data_as(_POINTERS[raw])

    def ngt_get_object_as_float(self, space, id, err):
        return self._get_object(space, id, _RAW_FLOAT, err)

    def ngt_get_object_as_integer(self, space, id, err):
        return self._get_object(space, id, _RAW_UINT8, err)

    def ngt_get_object_as_float16(self, space, id, err):
        return self._get_object(space, id, _RAW_FLOAT16, err)

    # -- search --------------------------------------------------------- #

    def ngt_create_empty_results(self, err):
        self.results_live += 1
        return _Results()

    def ngt_search_index_as_float(self, idx, ptr, dim, size, epsilon, radius, results, err):
        if dim != idx.prop.dimension:
            return self._fail(err, "Dimension is not proper")
        query = np.ctypeslib.as_array(ptr, shape=(dim,)).astype(np.float64)
        self.calls.append(("search", size, epsilon, radius))
        results.items = idx.nearest(query, size, radius)
        return True

    def ngt_get_result_size(self, results, err):
        return len(results.items)

    def ngt_get_result(self, results, i, err):
        distance, id = results.items[i]
        return ObjectDistance(id=id, distance=distance)

    def ngt_destroy_results(self, results):
        self.results_live -= 1

    # -- optimization --------------------------------------------------- #

    def ngt_refine_anng(self, idx, epsilon, accuracy, edges, edge_size, batch_size, err):
        self.calls.append(("refine", epsilon, accuracy, edges, edge_size, batch_size))
        return True

    def ngt_optimize_number_of_edges(self, path, params, err):
        if self._load(path.decode(), err) is None:
            return False
        self.calls.append(("optimize_edges", params.no_of_queries, params.no_of_threads,
                           params.max_of_no_of_edges, params.log))
        return True

    def ngt_create_optimizer(self, log_disabled, err):
        return _Optimizer(log_disabled)

    def ngt_optimizer_set(self, opt, outgoing, incoming, queries, base_from, base_to,
                          rate_from, rate_to, gte, merge, err):
        if outgoing > incoming:
            return self._fail(err, "outgoing edges exceed incoming edges")
        opt.settings = (outgoing, incoming, queries, base_from, base_to,
                        rate_from, rate_to, gte, merge)
        return True

    def ngt_optimizer_adjust_search_coefficients(self, opt, path, err):
        if self._load(path.decode(), err) is None:
            return False
        self.calls.append(("adjust", path.decode()))
        return True

    def ngt_optimizer_execute(self, opt, in_path, out_path, err):
        if self._load(in_path.decode(), err) is None:
            return False
        shutil.copytree(in_path.decode(), out_path.decode())
        self.calls.append(("onng", in_path.decode(), out_path.decode()))
        return True

    def ngt_destroy_optimizer(self, opt):
        self.calls.append(("destroy_optimizer",))

    # -- quantized graph ------------------------------------------------ #

    def ngtqg_quantize(self, path, params, err):
        idx = self._load(path.decode(), err)
        if idx is None:
            return False
        idx.quantized = True
        idx.save(path.decode())
        self.calls.append(("quantize", params.dimension_of_subvector, params.max_number_of_edges))
        return True

    def ngtqg_open_index(self, path, err):
        idx = self._load(path.decode(), err)
        if idx is None:
            return None
        if not idx.quantized:
            self._fail(err, "Cannot open the quantized index. Not quantized yet")
            return None
        self.indexes_live += 1
        return idx

    def ngtqg_close_index(self, idx):
        self.ngt_close_index(idx)

    def ngtqg_search_index(self, idx, query, results, err):
        dim = idx.prop.dimension
        q = np.ctypeslib.as_array(query.query, shape=(dim,)).astype(np.float64)
        self.calls.append(("qg_search", query.size, query.epsilon, query.result_expansion))
        results.items = idx.nearest(q, query.size, query.radius)
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_fake_ngt(monkeypatch):
    """Install a FakeNGT as the process-wide library; ``missing`` hides symbols."""
    def install(missing=()):
        fake = FakeNGT(missing=missing)
        monkeypatch.setattr(_FFI, "_lib", fake)
        monkeypatch.setattr(_FFI, "_features", None)
        return fake
    return install


@pytest.fixture
def fake_ngt(make_fake_ngt):
    return make_fake_ngt()


@pytest.fixture
def index_path(tmp_path):
    """Path for a new index directory (not created)."""
    return str(tmp_path / "index")


@pytest.fixture
def index3(fake_ngt, index_path):
    """Empty float index of dimension 3."""
    from ngt_ctypes import Index, Properties

    index = Index.create(index_path, Properties.with_dimension(3))
    yield index
    index.close()
