"""Tests for the distance function and nearest-neighbour matching."""

import math

import numpy as np
import pytest

import matcher as matcher_module
from conftest import FakeSource, vec
from descriptor_store import DescriptorStore, Identity
from matcher import UNKNOWN, DimensionMismatch, Matcher, euclidean_distance, validate_descriptor


def make_matcher(rows):
    store = DescriptorStore(FakeSource(rows))
    store.refresh()
    return Matcher(store)


class TestEuclideanDistance:
    def test_known_value(self):
        assert euclidean_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(5.0)

    def test_distance_to_self_is_zero(self):
        a = np.random.default_rng(0).normal(size=128)
        assert euclidean_distance(a, a) == 0.0

    def test_symmetric_and_non_negative(self):
        rng = np.random.default_rng(1)
        for _ in range(20):
            a, b = rng.normal(size=128), rng.normal(size=128)
            assert euclidean_distance(a, b) == euclidean_distance(b, a)
            assert euclidean_distance(a, b) >= 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch):
            euclidean_distance([1.0, 2.0], [1.0, 2.0, 3.0])

    def test_validate_descriptor_checks_length(self):
        assert validate_descriptor([1, 2, 3], 3).dtype == np.float32
        assert validate_descriptor([1, 2, 3], None).shape == (3,)
        with pytest.raises(DimensionMismatch):
            validate_descriptor([1, 2, 3], 4)


class TestMatcher:
    def test_match_below_threshold(self, alice, bob):
        m = make_matcher([(alice, [vec(1, 0, 0, 0)]), (bob, [vec(0, 1, 0, 0)])])

        result = m.match(vec(1, 0.4, 0, 0), threshold=0.6)

        assert result.identity == alice
        assert result.distance == pytest.approx(0.4)

    def test_distance_equal_to_threshold_is_unknown(self, alice):
        m = make_matcher([(alice, [vec(1, 0, 0, 0)])])
        query = vec(1, 0.4, 0, 0)
        exact = euclidean_distance(query, vec(1, 0, 0, 0))

        assert m.match(query, threshold=exact) == UNKNOWN
        assert m.match(query, threshold=exact + 1e-6).identity == alice

    def test_all_distances_above_threshold_is_unknown(self, alice, bob):
        m = make_matcher([(alice, [vec(1, 0, 0, 0)]), (bob, [vec(0, 1, 0, 0)])])

        result = m.match(vec(0, 0, 1, 0), threshold=0.6)

        assert result is UNKNOWN
        assert not result.is_match

    def test_empty_store_is_unknown(self):
        m = make_matcher([])
        assert m.match(vec(1, 0), threshold=10.0) is UNKNOWN
        assert m.best(vec(1, 0)) is None

    def test_identity_matches_on_closest_descriptor(self, alice, bob):
        m = make_matcher([
            (alice, [vec(0, 0, 1, 0), vec(1, 0, 0, 0)]),
            (bob, [vec(0.8, 0.3, 0, 0)]),
        ])

        result = m.match(vec(1, 0.1, 0, 0), threshold=0.6)

        assert result.identity == alice
        assert result.distance == pytest.approx(0.1, abs=1e-6)

    def test_tie_goes_to_first_enrolled(self, alice, bob):
        query = vec(0, 1)
        first = make_matcher([(alice, [vec(1, 0)]), (bob, [vec(-1, 0)])])
        second = make_matcher([(bob, [vec(-1, 0)]), (alice, [vec(1, 0)])])

        assert first.match(query, threshold=2.0).identity == alice
        assert second.match(query, threshold=2.0).identity == bob
        assert first.match(query, threshold=2.0).distance == pytest.approx(math.sqrt(2))

    def test_tie_break_is_deterministic(self, alice, bob):
        m = make_matcher([(alice, [vec(1, 0)]), (bob, [vec(-1, 0)])])
        results = {m.match(vec(0, 1), threshold=2.0).identity for _ in range(10)}
        assert results == {alice}

    def test_excluded_identity_is_skipped(self, alice, bob):
        m = make_matcher([(alice, [vec(1, 0, 0, 0)]), (bob, [vec(0, 1, 0, 0)])])

        assert m.match(vec(1, 0, 0, 0), threshold=0.6, exclude={alice.id}) is UNKNOWN
        identity, distance = m.best(vec(1, 0, 0, 0), exclude={alice.id})
        assert identity == bob
        assert distance == pytest.approx(math.sqrt(2))

    def test_identity_without_descriptors_is_ignored(self, alice, bob):
        m = make_matcher([(alice, []), (bob, [vec(1, 0)])])
        assert m.match(vec(1, 0), threshold=0.5).identity == bob

    def test_query_of_wrong_length_raises(self, alice):
        m = make_matcher([(alice, [vec(1, 0, 0, 0)])])
        with pytest.raises(DimensionMismatch):
            m.match(vec(1, 0), threshold=0.6)


def test_refresh_during_match_keeps_snapshot(monkeypatch, alice):
    carol = Identity(id=3, student_id="S003", name="Carol")
    source = FakeSource([(alice, [vec(1, 0, 0, 0)])])
    store = DescriptorStore(source)
    store.refresh()
    m = Matcher(store)

    real_distance = matcher_module.euclidean_distance
    refreshed = []

    def distance_with_concurrent_refresh(a, b):
        if not refreshed:
            source.rows = [(carol, [vec(1, 0.05, 0, 0)])]
            store.refresh()
            refreshed.append(True)
        return real_distance(a, b)

    monkeypatch.setattr(matcher_module, "euclidean_distance", distance_with_concurrent_refresh)

    result = m.match(vec(1, 0.05, 0, 0), threshold=0.6)

    assert refreshed
    assert result.identity == alice
    assert store.all()[0][0] == carol
    assert m.match(vec(1, 0.05, 0, 0), threshold=0.6).identity == carol
