import pytest
from loguru import logger


@pytest.fixture(autouse=True)
def _reset_logger():
    # main() points loguru at whatever sys.stderr is during the test; drop it afterwards.
    yield
    logger.remove()
