import logging
from tlscanner.__main__ import log_level

def test_log_level():
    assert log_level(0) == logging.INFO
    assert log_level(1) == logging.DEBUG
    assert log_level(3) == logging.DEBUG
    assert log_level(0, quiet=True) == logging.WARNING
    assert log_level(1, quiet=True) == logging.INFO
