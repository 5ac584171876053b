import pytest

from telecom_tax.logging_config import reset_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    """The CLI configures the telecom_tax logger; undo it so caplog keeps working."""
    yield
    reset_logging()
