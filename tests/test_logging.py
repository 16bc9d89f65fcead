"""Tests for logging utilities."""

import logging
from io import StringIO

import numpy as np
import pytest

from lsqopt import OptimizerOptions, gauss_newton
from lsqopt.core import LogOptions
from lsqopt.logging import PACKAGE, configure_logging, get_logger


@pytest.fixture
def log_stream():
    """Route lsqopt records to a buffer for the duration of a test."""
    stream = StringIO()
    configure_logging(level=logging.INFO, stream=stream)
    yield stream
    configure_logging(level=logging.WARNING)


def test_get_logger_nests_under_package():
    """Module loggers are children of the package logger."""
    logger = get_logger("test_module")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "lsqopt.test_module"
    assert logger.parent is get_logger()


def test_get_logger_keeps_package_names():
    """Module loggers are not prefixed twice."""
    assert get_logger("lsqopt.optimizer").name == "lsqopt.optimizer"
    assert get_logger().name == PACKAGE


def test_get_logger_caching():
    """Test that get_logger returns the same logger for the same name."""
    assert get_logger("test_module") is get_logger("test_module")
    assert get_logger("module1") is not get_logger("module2")


def test_package_logger_does_not_propagate():
    """Records stop at the package logger instead of reaching the root logger."""
    package = get_logger()
    assert package.propagate is False
    assert len(package.handlers) == 1


def test_module_records_reach_package_handler(log_stream):
    """Module loggers carry no handler of their own."""
    logger = get_logger("test_module")
    assert not logger.handlers
    logger.info("Test message")
    assert "[INFO] lsqopt.test_module: Test message" in log_stream.getvalue()


def test_configure_logging_string_level():
    """Test that configure_logging accepts level names."""
    stream = StringIO()
    configure_logging(level="debug", stream=stream)
    try:
        get_logger("test_module").debug("Debug message")
        assert get_logger().level == logging.DEBUG
        assert "Debug message" in stream.getvalue()
    finally:
        configure_logging(level=logging.WARNING)


def test_configure_logging_unknown_level():
    with pytest.raises(ValueError):
        configure_logging(level="chatty")


def test_configure_logging_replaces_handler():
    """Reconfiguring does not stack handlers."""
    configure_logging(level=logging.INFO, format_string="%(message)s", stream=StringIO())
    configure_logging(level=logging.WARNING)
    assert len(get_logger().handlers) == 1


def test_default_level_hides_iterations(shifted_residual):
    """Iteration lines are INFO records, hidden at the default WARNING level."""
    stream = StringIO()
    configure_logging(stream=stream)
    try:
        gauss_newton(np.zeros(2), shifted_residual([1.0, 2.0]))
    finally:
        configure_logging()
    assert stream.getvalue() == ""


def test_iterations_are_logged_at_info(shifted_residual, log_stream):
    """One line per iteration plus a stop line once INFO is enabled."""
    gauss_newton(np.zeros(2), shifted_residual([1.0, 2.0]))
    output = log_stream.getvalue()
    assert "#0 accepted" in output
    assert "Stopped after 1 iterations" in output


def test_iteration_logging_can_be_disabled(shifted_residual, log_stream):
    """LogOptions(enable=False) silences the per-iteration lines."""
    options = OptimizerOptions(log=LogOptions(enable=False))
    gauss_newton(np.zeros(2), shifted_residual([1.0, 2.0]), options)
    assert "accepted" not in log_stream.getvalue()
