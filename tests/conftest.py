import logging

import pytest


@pytest.fixture(autouse=True)
def _reset_maia_logger():
    # configure_logging() binds a handler to whatever sys.stderr is at call time;
    # drop it so the next test's capsys stream gets a fresh one.
    yield
    logger = logging.getLogger("maia")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
