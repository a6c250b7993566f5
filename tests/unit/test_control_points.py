"""
Unit tests for control point validation and the control point store
"""

import math

import numpy as np
import pytest

from common.errors import InvalidInput
from common.types import ControlPoint
from control_points import ControlPointStore, coerce_points


@pytest.fixture
def store():
    s = ControlPointStore()
    s.register_page("ov1", 400, 300)
    return s


class TestControlPoint:
    def test_valid_point(self):
        p = ControlPoint(10, 20, 13.4, 52.5, accuracy_m=2.5, confidence=0.9, source="automated")
        assert p.as_tuple() == (10, 20, 13.4, 52.5)

    def test_numpy_scalars_accepted(self):
        p = ControlPoint(np.float64(1.5), np.int64(2), 13.4, 52.5)
        assert p.pixel_y == 2

    @pytest.mark.parametrize("args", [
        (0, 0, 181.0, 0.0),
        (0, 0, 0.0, -90.5),
        (math.nan, 0, 0.0, 0.0),
        (0, math.inf, 0.0, 0.0),
        ("1", 0, 0.0, 0.0),
        (True, 0, 0.0, 0.0),
    ])
    def test_invalid_coordinates(self, args):
        with pytest.raises(InvalidInput):
            ControlPoint(*args)

    @pytest.mark.parametrize("kwargs", [
        {"accuracy_m": -1.0},
        {"confidence": 1.5},
        {"source": "guessed"},
    ])
    def test_invalid_metadata(self, kwargs):
        with pytest.raises(InvalidInput):
            ControlPoint(0, 0, 0.0, 0.0, **kwargs)

    def test_frozen(self):
        p = ControlPoint(0, 0, 0.0, 0.0)
        with pytest.raises(AttributeError):
            p.lon = 1.0

    def test_from_tuple(self):
        assert ControlPoint.from_tuple((1, 2, 3, 4)).lat == 4.0
        with pytest.raises(InvalidInput):
            ControlPoint.from_tuple((1, 2, 3))


class TestControlPointStore:
    def test_add_and_list_in_order(self, store):
        ids = [store.add("ov1", ControlPoint(i * 10, 5, 13.0 + i * 0.01, 52.0)) for i in range(3)]
        assert len(set(ids)) == 3
        assert all(i.startswith("cp_") for i in ids)
        assert [p.pixel_x for p in store.list("ov1")] == [0, 10, 20]

    def test_pixel_outside_page(self, store):
        with pytest.raises(InvalidInput):
            store.add("ov1", ControlPoint(401, 0, 13.0, 52.0))
        with pytest.raises(InvalidInput):
            store.add("ov1", ControlPoint(0, -0.5, 13.0, 52.0))

    def test_page_edges_are_inside(self, store):
        store.add("ov1", ControlPoint(400, 300, 13.0, 52.0))
        assert len(store.list("ov1")) == 1

    def test_unknown_overlay(self, store):
        with pytest.raises(InvalidInput):
            store.add("nope", ControlPoint(0, 0, 0.0, 0.0))
        with pytest.raises(InvalidInput):
            store.list("nope")

    def test_remove(self, store):
        pid = store.add("ov1", ControlPoint(1, 1, 13.0, 52.0))
        store.add("ov1", ControlPoint(2, 2, 13.0, 52.0))
        store.remove(pid)
        assert [p.pixel_x for p in store.list("ov1")] == [2]
        with pytest.raises(InvalidInput):
            store.remove(pid)

    def test_replace_is_all_or_nothing(self, store):
        store.add("ov1", ControlPoint(1, 1, 13.0, 52.0))
        bad = [ControlPoint(5, 5, 13.0, 52.0), ControlPoint(999, 5, 13.0, 52.0)]
        with pytest.raises(InvalidInput):
            store.replace("ov1", bad)
        assert [p.pixel_x for p in store.list("ov1")] == [1]
        ids = store.replace("ov1", bad[:1])
        assert len(ids) == 1
        assert [p.pixel_x for p in store.list("ov1")] == [5]

    def test_register_page_rejects_empty(self):
        with pytest.raises(InvalidInput):
            ControlPointStore().register_page("ov1", 0, 100)


class TestCoercePoints:
    def test_tuples_and_points(self):
        pts = coerce_points([(1, 2, 3.0, 4.0), ControlPoint(5, 6, 7.0, 8.0), [9, 10, 11.0, 12.0]])
        assert [p.pixel_x for p in pts] == [1, 5, 9]

    def test_rejects_other_types(self):
        with pytest.raises(InvalidInput):
            coerce_points([{"pixel_x": 1}])
