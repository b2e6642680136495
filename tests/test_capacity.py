"""
Tests for the capacity estimator
"""

import pytest

from vpnfleet.services.capacity import CapacityEstimator, current_load


@pytest.fixture
def estimator(settings):
    return CapacityEstimator(settings)


def test_idle_node_uses_throughput_only(estimator):
    """Below the soft threshold the load does not derate"""
    assert estimator.estimate(800, cpu=20, ram=40) == 100


def test_fully_loaded_node_keeps_minimum_fraction(estimator):
    assert estimator.estimate(800, cpu=100, ram=10) == 35
    assert estimator.estimate(800, cpu=10, ram=100) == 35


def test_load_factor_is_linear_above_threshold(estimator):
    assert estimator.load_factor(60, 0) == 1.0
    assert estimator.load_factor(80, 0) == pytest.approx(0.675)
    assert estimator.load_factor(None, None) == 1.0


def test_estimate_is_clamped(estimator):
    assert estimator.estimate(8, cpu=0, ram=0) == 2
    assert estimator.estimate(10 ** 9, cpu=0, ram=0) == 10000


def test_estimate_is_smoothed_against_previous(estimator):
    """One heartbeat moves the value only part of the way"""
    assert estimator.estimate(1600, cpu=0, ram=0, previous=100) == 130


def test_missing_throughput_falls_back(estimator):
    assert estimator.estimate(None, cpu=50, ram=50, previous=42) == 42
    assert estimator.estimate(0, cpu=50, ram=50, previous=0) == 1
    assert estimator.estimate(None, cpu=None, ram=None) == 1


def test_current_load():
    assert current_load(25, 100) == 0.25
    assert current_load(5, 0) == 0.0
